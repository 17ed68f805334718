import re
import weakref
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np

from dae_lib.debug_stub import DebugConsole
from dae_lib.transforms import TRANSFORM_ARITY, TransformOp, compose, identity, matrix


# ==============================================================================
# 1. ERRORS, ENUMS and Helper Classes
# ==============================================================================
class ColladaError(Exception):
    def __init__(self, message, element_id=None):
        super().__init__(message)
        self.element_id = element_id


class MalformedDocumentError(ColladaError):
    pass


class BindingError(ColladaError):
    def __init__(self, message, array_id=None, index=None, element_id=None):
        super().__init__(message, element_id)
        self.array_id = array_id
        self.index = index


class UnresolvedSourceError(ColladaError):
    def __init__(self, message, source_id=None, element_id=None):
        super().__init__(message, element_id)
        self.source_id = source_id


class UnresolvedReferenceError(ColladaError):
    def __init__(self, message, kind=None, reference_id=None, element_id=None):
        super().__init__(message, element_id)
        self.kind = kind
        self.reference_id = reference_id


class UnsupportedPolygonShapeError(ColladaError):
    def __init__(self, message, shape=None, element_id=None):
        super().__init__(message, element_id)
        self.shape = shape


class NonTriangularSurfaceError(ColladaError):
    def __init__(self, message, counts=None, element_id=None):
        super().__init__(message, element_id)
        self.counts = counts


class MissingVertexAttributeError(ColladaError):
    def __init__(self, message, channel=None, available=None, element_id=None):
        super().__init__(message, element_id)
        self.channel = channel
        self.available = available


class UnsupportedBindPoseError(ColladaError):
    pass


class Semantic(str, Enum):
    BINORMAL = "BINORMAL"
    COLOR = "COLOR"
    CONTINUITY = "CONTINUITY"
    IMAGE = "IMAGE"
    INPUT = "INPUT"
    IN_TANGENT = "IN_TANGENT"
    INTERPOLATION = "INTERPOLATION"
    INV_BIND_MATRIX = "INV_BIND_MATRIX"
    JOINT = "JOINT"
    LINEAR_STEPS = "LINEAR_STEPS"
    MORPH_TARGET = "MORPH_TARGET"
    MORPH_WEIGHT = "MORPH_WEIGHT"
    NORMAL = "NORMAL"
    OUTPUT = "OUTPUT"
    OUT_TANGENT = "OUT_TANGENT"
    POSITION = "POSITION"
    TANGENT = "TANGENT"
    TEXBINORMAL = "TEXBINORMAL"
    TEXCOORD = "TEXCOORD"
    TEXTANGENT = "TEXTANGENT"
    UV = "UV"
    VERTEX = "VERTEX"
    WEIGHT = "WEIGHT"


class NodeType(str, Enum):
    NODE = "node"
    JOINT = "joint"


class ReferenceKind(str, Enum):
    GEOMETRY = "geometry"
    CONTROLLER = "controller"
    NODE = "node"


PRIMITIVE_ELEMENTS = ("triangles", "polylist", "polygons", "lines", "linestrips", "trifans", "tristrips")


def _qualify(path):
    return "/".join(part if part in (".", "..") else "{*}" + part for part in path.split("/"))


def _strip_hash(url):
    return url[1:] if url and url.startswith("#") else url


class DocumentTree:
    """Namespace-agnostic read access to one element of a parsed document."""

    def __init__(self, element):
        self.element = element

    @classmethod
    def from_file(cls, path):
        try:
            return cls(ET.parse(path).getroot())
        except ET.ParseError as e:
            raise MalformedDocumentError(f"Could not parse {path}: {e}")

    @classmethod
    def from_string(cls, text):
        try:
            return cls(ET.fromstring(text))
        except ET.ParseError as e:
            raise MalformedDocumentError(f"Could not parse document: {e}")

    @property
    def name(self):
        return self.element.tag.rsplit("}", 1)[-1]

    @property
    def id(self):
        return self.element.get("id")

    def get(self, key, default=None):
        return self.element.get(key, default)

    def require_attribute(self, key):
        value = self.element.get(key)
        if value is None:
            raise MalformedDocumentError(
                f"<{self.name}> is missing required attribute '{key}'", self.id
            )
        return value

    def find(self, path) -> Optional["DocumentTree"]:
        found = self.element.find(_qualify(path))
        return DocumentTree(found) if found is not None else None

    def require(self, path) -> "DocumentTree":
        found = self.find(path)
        if found is None:
            raise MalformedDocumentError(
                f"<{self.name}> is missing required element <{path}>", self.id
            )
        return found

    def findall(self, path) -> List["DocumentTree"]:
        return [DocumentTree(e) for e in self.element.findall(_qualify(path))]

    def children(self) -> List["DocumentTree"]:
        return [DocumentTree(e) for e in self.element]

    def tokens(self) -> List[str]:
        return (self.element.text or "").split()

    def floats(self) -> List[float]:
        try:
            return [float(t) for t in self.tokens()]
        except ValueError as e:
            raise MalformedDocumentError(f"Non-numeric data in <{self.name}>: {e}", self.id)

    def ints(self) -> List[int]:
        try:
            return [int(t) for t in self.tokens()]
        except ValueError as e:
            raise MalformedDocumentError(f"Non-integer data in <{self.name}>: {e}", self.id)


class OrderedMap:
    """Items in document order, with an index for those that carry an id."""

    def __init__(self, ordered=None, indexed=None):
        self.ordered = ordered if ordered is not None else []
        self.indexed = indexed if indexed is not None else {}

    def __getitem__(self, key):
        return self.indexed[key]

    def get(self, key, default=None):
        return self.indexed.get(key, default)

    def __contains__(self, key):
        return key in self.indexed

    def __iter__(self):
        return iter(self.ordered)

    def __len__(self):
        return len(self.ordered)

    def append(self, key, value):
        if key is not None:
            self.indexed[key] = value
        self.ordered.append(value)

    @classmethod
    def parse(cls, top: DocumentTree, path, reader, id_key="id"):
        result = cls()
        for element in top.findall(path):
            result.append(element.get(id_key), reader(element))
        return result


@dataclass(frozen=True)
class Attribute:
    """A decoded value tagged with the semantic of the input that produced it."""
    semantic: Semantic
    value: Any

    def __getitem__(self, key):
        return self.value[key]


def merge_attributes(attributes: List[Attribute]) -> Dict[Semantic, Any]:
    """First attribute wins for each semantic (lowest input set)."""
    merged = {}
    for attribute in attributes:
        merged.setdefault(attribute.semantic, attribute.value)
    return merged


def first_value(value):
    """The single named field of a one-parameter source."""
    if isinstance(value, dict):
        return next(iter(value.values()), None)
    return value


# ==============================================================================
# 2. Data Structures: arrays, accessors, sources and inputs
# ==============================================================================
@dataclass
class NumericArray:
    id: Optional[str]
    values: Any  # np.ndarray for numeric arrays, tuple of str for name arrays

    def __len__(self):
        return len(self.values)

    def slice(self, start, count) -> list:
        chunk = self.values[start:start + count]
        return chunk.tolist() if isinstance(chunk, np.ndarray) else list(chunk)


ARRAY_READERS = {
    "float_array": lambda e: np.array(e.floats(), dtype=np.float64),
    "int_array": lambda e: np.array(e.ints(), dtype=np.int64),
    "Name_array": lambda e: tuple(e.tokens()),
    "IDREF_array": lambda e: tuple(e.tokens()),
    "bool_array": lambda e: tuple(t.lower() in ("true", "1") for t in e.tokens()),
}

_VECTOR_TYPE = re.compile(r"^(?:float|int|double)(\d+)$")
_MATRIX_TYPE = re.compile(r"^(?:float|int|double)(\d+)x(\d+)$")


@dataclass
class Parameter:
    name: Optional[str]
    type: str = "float"
    arity: int = 1
    shape: Tuple[int, ...] = ()

    @classmethod
    def create(cls, name, type_name):
        type_name = type_name or "float"
        m = _MATRIX_TYPE.match(type_name)
        if m:
            rows, cols = int(m.group(1)), int(m.group(2))
            return cls(name, type_name, rows * cols, (rows, cols))
        m = _VECTOR_TYPE.match(type_name)
        if m:
            size = int(m.group(1))
            return cls(name, type_name, size, (size,))
        return cls(name, type_name, 1, ())

    def decode(self, values: list):
        if len(self.shape) == 2:
            return np.array(values, dtype=float).reshape(self.shape)
        if len(self.shape) == 1:
            return tuple(values)
        return values[0]


class Accessor:
    """Strided view decoding named fields out of a NumericArray."""

    def __init__(self, array: NumericArray, parameters: List[Parameter], offset=0, stride=None):
        self.array = array
        self.parameters = parameters
        self.width = sum(p.arity for p in parameters)
        self.offset = int(offset)
        self.stride = int(stride) if stride is not None else self.width

        if self.stride <= 0 or self.stride < self.width:
            raise BindingError(
                f"Accessor stride {self.stride} is smaller than its parameters require ({self.width})",
                array_id=array.id,
            )
        if self.offset < 0 or self.offset > len(array):
            raise BindingError(
                f"Accessor offset {self.offset} lies outside array of {len(array)} values",
                array_id=array.id,
            )

    def __len__(self):
        return (len(self.array) - self.offset) // self.stride

    def size(self):
        return len(self)

    def read(self, index) -> List[Tuple[Optional[str], Any]]:
        base = self.offset + index * self.stride
        if index < 0 or base + self.width > len(self.array):
            raise BindingError(
                f"Element {index} lies outside array '{self.array.id}'",
                array_id=self.array.id,
                index=index,
            )
        values = self.array.slice(base, self.width)
        result = []
        position = 0
        for parameter in self.parameters:
            result.append((parameter.name, parameter.decode(values[position:position + parameter.arity])))
            position += parameter.arity
        return result

    def __getitem__(self, index) -> Dict[str, Any]:
        return {name: value for name, value in self.read(index) if name is not None}

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]


@dataclass
class Source:
    id: Optional[str]
    accessor: Accessor

    def __getitem__(self, index):
        return self.accessor[index]

    def __len__(self):
        return len(self.accessor)

    def attributes(self, index, semantic) -> List[Attribute]:
        return [Attribute(semantic, self[index])]


@dataclass
class Input:
    semantic: Semantic
    source: Any  # Source or VerticesBundle
    offset: int = 0
    set: Optional[int] = None

    def read(self, index) -> List[Attribute]:
        return self.source.attributes(index, self.semantic)


@dataclass
class VerticesBundle:
    """Inputs sharing one element index, plus the index itself as a VERTEX tag."""
    id: Optional[str]
    inputs: List[Input]

    def __len__(self):
        return max((len(i.source) for i in self.inputs), default=0)

    def attributes(self, index, semantic=None) -> List[Attribute]:
        result = []
        for input in self.inputs:
            result.extend(input.read(index))
        result.append(Attribute(Semantic.VERTEX, {"index": index}))
        return result


# ==============================================================================
# 3. Data Structures: geometry, controllers, scenes, animations
# ==============================================================================
class Triangles:
    name = "triangles"

    def vertex_count(self, index):
        return 3


class PolyList:
    name = "polylist"

    def __init__(self, counts: List[int]):
        self.counts = counts

    def vertex_count(self, index):
        return self.counts[index]


class PolygonSet:
    def __init__(self, inputs: List[Input], indices: List[int], count: int, shape, material=None):
        self.inputs = inputs
        self.indices = indices
        self.count = count
        self.shape = shape
        self.material = material
        # Number of indices consumed per vertex
        self.stride = 1 + max((i.offset for i in inputs), default=0)

        needed = sum(shape.vertex_count(i) for i in range(count)) * self.stride
        if needed > len(indices):
            raise MalformedDocumentError(
                f"<{shape.name}> needs {needed} indices but only {len(indices)} are present"
            )

    def __len__(self):
        return self.count

    def vertex(self, index) -> List[Attribute]:
        base = self.stride * index
        attributes = []
        for input in self.inputs:
            attributes.extend(input.read(self.indices[base + input.offset]))
        return attributes

    def each_indices(self) -> Iterator[List[int]]:
        vertex_offset = 0
        for index in range(self.count):
            vertex_count = self.shape.vertex_count(index)
            yield list(range(vertex_offset, vertex_offset + vertex_count))
            vertex_offset += vertex_count

    def __iter__(self):
        for indices in self.each_indices():
            yield [self.vertex(i) for i in indices]


@dataclass
class Mesh:
    sources: OrderedMap
    vertices: Optional[VerticesBundle]
    polygons: List[PolygonSet]


@dataclass
class Geometry:
    id: Optional[str]
    name: Optional[str]
    mesh: Mesh


@dataclass
class Sampler:
    """Inputs read at a shared index (skin joints, animation keys)."""
    id: Optional[str]
    inputs: List[Input]

    def __len__(self):
        return max((len(i.source) for i in self.inputs), default=0)

    def attributes(self, index, semantic=None) -> List[Attribute]:
        result = []
        for input in self.inputs:
            result.extend(input.read(index))
        return result

    def input(self, semantic) -> Optional[Input]:
        return next((i for i in self.inputs if i.semantic == semantic), None)


class VertexWeights:
    """Per-vertex (joint, weight) influence lists from <vcount>/<v>."""

    def __init__(self, inputs: List[Input], counts: List[int], indices: List[int]):
        self.inputs = inputs
        self.counts = counts
        self.indices = indices
        self.stride = 1 + max((i.offset for i in inputs), default=0)

        for semantic in (Semantic.JOINT, Semantic.WEIGHT):
            if not any(i.semantic == semantic for i in inputs):
                raise MalformedDocumentError(f"<vertex_weights> has no {semantic.value} input")

        needed = sum(counts) * self.stride
        if needed > len(indices):
            raise MalformedDocumentError(
                f"<vertex_weights> needs {needed} indices but only {len(indices)} are present"
            )

    def __len__(self):
        return len(self.counts)

    def influence(self, index) -> List[Attribute]:
        base = self.stride * index
        attributes = []
        for input in self.inputs:
            attributes.extend(input.read(self.indices[base + input.offset]))
        return attributes

    def __iter__(self):
        influence_offset = 0
        for count in self.counts:
            yield [self.influence(influence_offset + i) for i in range(count)]
            influence_offset += count

    def raw_weights(self) -> List[List[Tuple[str, float]]]:
        result = []
        for influences in self:
            vertex = []
            for attributes in influences:
                merged = merge_attributes(attributes)
                vertex.append((first_value(merged.get(Semantic.JOINT)), first_value(merged.get(Semantic.WEIGHT))))
            result.append(vertex)
        return result


@dataclass
class Skin:
    id: Optional[str]
    name: Optional[str]
    source: "Reference"
    bind_shape_transform: np.ndarray
    sources: OrderedMap
    joints: Sampler
    weights: VertexWeights

    @property
    def joint_names(self) -> List[str]:
        joint_input = self.joints.input(Semantic.JOINT)
        if joint_input is None:
            return []
        return [first_value(joint_input.source[i]) for i in range(len(joint_input.source))]

    def inverse_bind_matrices(self) -> Dict[str, np.ndarray]:
        joint_input = self.joints.input(Semantic.JOINT)
        matrix_input = self.joints.input(Semantic.INV_BIND_MATRIX)
        if joint_input is None or matrix_input is None:
            return {}
        return {
            first_value(joint_input.source[i]): np.asarray(first_value(matrix_input.source[i]), dtype=float)
            for i in range(min(len(joint_input.source), len(matrix_input.source)))
        }


@dataclass
class Reference:
    kind: ReferenceKind
    id: str

    def lookup(self, library: "Library"):
        return library.lookup(self.kind, self.id)


@dataclass
class ControllerInstance(Reference):
    skeletons: List[str] = field(default_factory=list)


class SceneNode:
    def __init__(self, id, transforms, instances, children, sid=None, name=None, type=NodeType.NODE):
        self.id = id
        self.sid = sid
        self.name = name
        self.type = type
        self.transforms: List[TransformOp] = transforms
        self.instances: List[Reference] = instances
        self.children: List[SceneNode] = children
        self._parent = None
        for child in children:
            child._parent = weakref.ref(self)

    def __repr__(self):
        return f"SceneNode(id={self.id!r}, type={self.type.value})"

    @property
    def parent(self) -> Optional["SceneNode"]:
        return self._parent() if self._parent is not None else None

    def parents(self, node_type: Optional[NodeType] = None) -> Iterator["SceneNode"]:
        node = self.parent
        while node is not None:
            if node_type is None or node.type == node_type:
                yield node
            node = node.parent

    def local_transform_matrix(self) -> np.ndarray:
        return compose(self.transforms)

    def transform_matrix(self) -> np.ndarray:
        parent = self.parent
        local = self.local_transform_matrix()
        if parent is None:
            return local
        return parent.transform_matrix() @ local

    def traverse(self) -> Iterator["SceneNode"]:
        yield self
        for child in self.children:
            yield from child.traverse()


class VisualScene:
    def __init__(self, id, name, nodes: List[SceneNode]):
        self.id = id
        self.name = name
        self.nodes = nodes
        self.nodes_by_id = {}
        for node in self.traverse():
            if node.id is not None:
                self.nodes_by_id.setdefault(node.id, node)

    def __getitem__(self, node_id) -> SceneNode:
        node = self.nodes_by_id.get(node_id)
        if node is None:
            raise UnresolvedReferenceError(
                f"No node '{node_id}' in visual scene '{self.id}'",
                kind=ReferenceKind.NODE,
                reference_id=node_id,
                element_id=self.id,
            )
        return node

    def traverse(self, nodes=None) -> Iterator[SceneNode]:
        for node in self.nodes if nodes is None else nodes:
            yield from node.traverse()


@dataclass
class Keyframe:
    interpolation: str
    time: float
    transform: List[float]


@dataclass
class Channel:
    sampler: Sampler
    target: str

    def keyframes(self) -> List[Keyframe]:
        time_input = self.sampler.input(Semantic.INPUT)
        output_input = self.sampler.input(Semantic.OUTPUT)
        interpolation_input = self.sampler.input(Semantic.INTERPOLATION)
        if time_input is None or output_input is None:
            raise MalformedDocumentError(
                f"Sampler for '{self.target}' needs INPUT and OUTPUT inputs", self.sampler.id
            )
        keys = []
        for i in range(len(time_input.source)):
            transform = np.asarray(first_value(output_input.source[i]), dtype=float)
            if transform.size != 16:
                raise MalformedDocumentError(
                    f"Channel '{self.target}' output is not a 4x4 matrix", self.sampler.id
                )
            interpolation = "linear"
            if interpolation_input is not None:
                interpolation = str(first_value(interpolation_input.source[i])).lower()
            keys.append(Keyframe(interpolation, float(first_value(time_input.source[i])),
                                 [float(v) for v in transform.reshape(-1)]))
        return keys


@dataclass
class Animation:
    id: Optional[str]
    sources: OrderedMap
    samplers: OrderedMap
    channels: List[Channel]
    children: List["Animation"] = field(default_factory=list)

    def all_channels(self) -> Iterator[Channel]:
        yield from self.channels
        for child in self.children:
            yield from child.all_channels()


# ==============================================================================
# 4. DAE Parser
# ==============================================================================
class DAEParser:
    """Reads library items out of a DocumentTree. Each call handles one element."""

    def __init__(self, document: DocumentTree):
        self.document = document

    # --- arrays, sources, inputs ---
    def read_arrays(self, container: DocumentTree) -> OrderedMap:
        arrays = OrderedMap()
        for source_element in container.findall("source"):
            for element in source_element.children():
                reader = ARRAY_READERS.get(element.name)
                if reader is None:
                    continue
                array = NumericArray(element.id, reader(element))
                declared = element.get("count")
                if declared is not None and declared.isdigit() and int(declared) != len(array):
                    DebugConsole.warning(
                        f"Array '{array.id}' declares {declared} values but holds {len(array)}"
                    )
                arrays.append(array.id, array)
        return arrays

    def read_parameter(self, element: DocumentTree) -> Parameter:
        return Parameter.create(element.get("name"), element.get("type"))

    def read_accessor(self, element: DocumentTree, arrays: OrderedMap, owner: DocumentTree) -> Accessor:
        array_id = _strip_hash(element.get("source"))
        if array_id:
            array = arrays.get(array_id)
        else:
            local = self.read_arrays_in(owner)
            array = local[0] if local else None
        if array is None:
            raise BindingError(
                f"Source array binding must be valid (id={array_id})",
                array_id=array_id,
                element_id=owner.id,
            )
        parameters = [self.read_parameter(p) for p in element.findall("param")]
        try:
            offset = int(element.get("offset", 0))
            stride = int(element.get("stride")) if element.get("stride") is not None else None
        except ValueError as e:
            raise MalformedDocumentError(f"Bad accessor offset/stride: {e}", owner.id)
        return Accessor(array, parameters, offset, stride)

    def read_arrays_in(self, source_element: DocumentTree) -> List[NumericArray]:
        result = []
        for element in source_element.children():
            reader = ARRAY_READERS.get(element.name)
            if reader is not None:
                result.append(NumericArray(element.id, reader(element)))
        return result

    def read_source(self, element: DocumentTree, arrays: OrderedMap) -> Source:
        accessor_element = element.require("technique_common/accessor")
        return Source(element.id, self.read_accessor(accessor_element, arrays, element))

    def read_sources(self, container: DocumentTree) -> OrderedMap:
        arrays = self.read_arrays(container)
        return OrderedMap.parse(container, "source", lambda e: self.read_source(e, arrays))

    def read_input(self, element: DocumentTree, sources: OrderedMap) -> Input:
        semantic_name = element.require_attribute("semantic")
        try:
            semantic = Semantic(semantic_name.upper())
        except ValueError:
            raise MalformedDocumentError(f"Unknown input semantic '{semantic_name}'")
        source_id = _strip_hash(element.require_attribute("source"))
        source = sources.get(source_id)
        if source is None:
            raise UnresolvedSourceError(
                f"Can't bind {semantic.value} input to missing source '{source_id}'",
                source_id=source_id,
            )
        try:
            offset = int(element.get("offset", 0))
            input_set = int(element.get("set")) if element.get("set") is not None else None
        except ValueError as e:
            raise MalformedDocumentError(f"Bad input offset/set: {e}", source_id)
        return Input(semantic, source, offset, input_set)

    def read_inputs(self, element: DocumentTree, sources: OrderedMap) -> List[Input]:
        return [self.read_input(e, sources) for e in element.findall("input")]

    # --- geometry ---
    def read_polygons(self, element: DocumentTree, sources: OrderedMap) -> PolygonSet:
        if element.name == "triangles":
            shape = Triangles()
        elif element.name == "polylist":
            vcount = element.find("vcount")
            shape = PolyList(vcount.ints() if vcount is not None else [])
        else:
            raise UnsupportedPolygonShapeError(
                f"Unsupported polygon primitive <{element.name}>", shape=element.name
            )
        inputs = self.read_inputs(element, sources)
        p = element.find("p")
        indices = p.ints() if p is not None else []
        try:
            count = int(element.require_attribute("count"))
        except ValueError as e:
            raise MalformedDocumentError(f"Bad polygon count: {e}")
        if isinstance(shape, PolyList) and len(shape.counts) < count:
            raise MalformedDocumentError(
                f"<polylist> declares {count} polygons but <vcount> has {len(shape.counts)}"
            )
        return PolygonSet(inputs, indices, count, shape, element.get("material"))

    def read_mesh(self, element: DocumentTree) -> Mesh:
        sources = self.read_sources(element)
        vertices = None
        vertices_element = element.find("vertices")
        if vertices_element is not None:
            vertices = VerticesBundle(vertices_element.id, self.read_inputs(vertices_element, sources))
            sources.append(vertices.id, vertices)
        polygons = [
            self.read_polygons(child, sources)
            for child in element.children()
            if child.name in PRIMITIVE_ELEMENTS
        ]
        return Mesh(sources, vertices, polygons)

    def read_geometry(self, element: DocumentTree) -> Geometry:
        mesh_element = element.find("mesh")
        if mesh_element is None:
            raise MalformedDocumentError(f"Geometry '{element.id}' has no <mesh>", element.id)
        try:
            mesh = self.read_mesh(mesh_element)
        except ColladaError as e:
            e.element_id = e.element_id or element.id
            raise
        return Geometry(element.id, element.get("name"), mesh)

    # --- controllers ---
    def read_controller(self, element: DocumentTree) -> Skin:
        skin_element = element.find("skin")
        if skin_element is None:
            raise MalformedDocumentError(
                f"Controller '{element.id}' is not a skin; only skin controllers are supported",
                element.id,
            )
        try:
            return self._read_skin(element, skin_element)
        except ColladaError as e:
            e.element_id = e.element_id or element.id
            raise

    def _read_skin(self, element: DocumentTree, skin_element: DocumentTree) -> Skin:
        bind_shape_transform = identity()
        bind_shape_element = skin_element.find("bind_shape_matrix")
        if bind_shape_element is not None:
            values = bind_shape_element.floats()
            if len(values) != 16:
                raise MalformedDocumentError("<bind_shape_matrix> needs 16 values", element.id)
            bind_shape_transform = matrix(*values)

        sources = self.read_sources(skin_element)
        joints_element = skin_element.require("joints")
        joints = Sampler(joints_element.id, self.read_inputs(joints_element, sources))

        weights_element = skin_element.require("vertex_weights")
        vcount = weights_element.find("vcount")
        v = weights_element.find("v")
        weights = VertexWeights(
            self.read_inputs(weights_element, sources),
            vcount.ints() if vcount is not None else [],
            v.ints() if v is not None else [],
        )
        source = Reference(ReferenceKind.GEOMETRY, _strip_hash(skin_element.require_attribute("source")))
        return Skin(element.id, element.get("name"), source, bind_shape_transform, sources, joints, weights)

    # --- visual scenes ---
    def read_transforms(self, element: DocumentTree) -> List[TransformOp]:
        transforms = []
        for child in element.children():
            arity = TRANSFORM_ARITY.get(child.name)
            if arity is None:
                if child.name in ("lookat", "skew"):
                    DebugConsole.warning(f"Skipping unsupported <{child.name}> on node '{element.id}'")
                continue
            values = child.floats()
            if len(values) != arity:
                raise MalformedDocumentError(
                    f"<{child.name}> on node '{element.id}' needs {arity} values, got {len(values)}",
                    element.id,
                )
            transforms.append(TransformOp(child.name, values))
        return transforms

    def read_instances(self, element: DocumentTree) -> List[Reference]:
        instances = []
        for child in element.children():
            if child.name == "instance_geometry":
                instances.append(Reference(ReferenceKind.GEOMETRY, _strip_hash(child.require_attribute("url"))))
            elif child.name == "instance_controller":
                skeletons = [_strip_hash(s.tokens()[0]) for s in child.findall("skeleton") if s.tokens()]
                instances.append(ControllerInstance(
                    ReferenceKind.CONTROLLER, _strip_hash(child.require_attribute("url")), skeletons
                ))
            elif child.name == "instance_node":
                instances.append(Reference(ReferenceKind.NODE, _strip_hash(child.require_attribute("url"))))
        return instances

    def read_node(self, element: DocumentTree) -> SceneNode:
        # Children are built first; the constructor links their parent back-references.
        children = [self.read_node(e) for e in element.findall("node")]
        node_type = NodeType.JOINT if (element.get("type") or "").upper() == "JOINT" else NodeType.NODE
        return SceneNode(
            element.id,
            self.read_transforms(element),
            self.read_instances(element),
            children,
            sid=element.get("sid"),
            name=element.get("name"),
            type=node_type,
        )

    def read_visual_scene(self, element: DocumentTree) -> VisualScene:
        nodes = [self.read_node(e) for e in element.findall("node")]
        return VisualScene(element.id, element.get("name"), nodes)

    # --- animations ---
    def read_channel(self, element: DocumentTree, samplers: OrderedMap) -> Channel:
        sampler_id = _strip_hash(element.require_attribute("source"))
        sampler = samplers.get(sampler_id)
        if sampler is None:
            raise UnresolvedSourceError(
                f"Channel refers to missing sampler '{sampler_id}'", source_id=sampler_id
            )
        return Channel(sampler, element.require_attribute("target"))

    def read_animation(self, element: DocumentTree) -> Animation:
        sources = self.read_sources(element)
        samplers = OrderedMap.parse(
            element, "sampler", lambda e: Sampler(e.id, self.read_inputs(e, sources))
        )
        channels = [self.read_channel(e, samplers) for e in element.findall("channel")]
        children = [self.read_animation(e) for e in element.findall("animation")]
        return Animation(element.id, sources, samplers, channels, children)


# ==============================================================================
# 5. Library (lazy, memoized sections)
# ==============================================================================
class LibrarySection:
    """Elements are indexed on creation; each item is parsed on first access."""

    def __init__(self, elements: List[DocumentTree], reader):
        self.elements = elements
        self.reader = reader
        self.by_id = {e.id: i for i, e in enumerate(elements) if e.id is not None}
        self._parsed = {}

    def __len__(self):
        return len(self.elements)

    def item(self, position):
        if position not in self._parsed:
            self._parsed[position] = self.reader(self.elements[position])
        return self._parsed[position]

    def get(self, item_id):
        position = self.by_id.get(item_id)
        return self.item(position) if position is not None else None

    def __iter__(self):
        for position in range(len(self.elements)):
            yield self.item(position)


class Library:
    SECTIONS = {
        "geometries": ("library_geometries/geometry", "read_geometry"),
        "controllers": ("library_controllers/controller", "read_controller"),
        "visual_scenes": ("library_visual_scenes/visual_scene", "read_visual_scene"),
        "animations": ("library_animations/animation", "read_animation"),
        "nodes": ("library_nodes/node", "read_node"),
    }

    SECTION_BY_KIND = {
        ReferenceKind.GEOMETRY: "geometries",
        ReferenceKind.CONTROLLER: "controllers",
        ReferenceKind.NODE: "nodes",
    }

    def __init__(self, document: DocumentTree):
        self.document = document
        self.parser = DAEParser(document)
        self._sections: Dict[str, LibrarySection] = {}

    @classmethod
    def from_file(cls, path):
        return cls(DocumentTree.from_file(path))

    @classmethod
    def from_string(cls, text):
        return cls(DocumentTree.from_string(text))

    def section(self, key) -> LibrarySection:
        if key not in self._sections:
            path, reader_name = self.SECTIONS[key]
            self._sections[key] = LibrarySection(
                self.document.findall(path), getattr(self.parser, reader_name)
            )
        return self._sections[key]

    def __getitem__(self, key) -> LibrarySection:
        return self.section(key)

    @property
    def geometries(self):
        return self.section("geometries")

    @property
    def controllers(self):
        return self.section("controllers")

    @property
    def visual_scenes(self):
        return self.section("visual_scenes")

    @property
    def animations(self):
        return self.section("animations")

    @property
    def nodes(self):
        return self.section("nodes")

    def lookup(self, kind: ReferenceKind, item_id):
        item = self.section(self.SECTION_BY_KIND[kind]).get(item_id)
        if item is None:
            raise UnresolvedReferenceError(
                f"No {kind.value} with id '{item_id}'", kind=kind, reference_id=item_id
            )
        return item

    def scene_id(self) -> Optional[str]:
        """The visual scene instanced by <scene>, if any."""
        instance = self.document.find("scene/instance_visual_scene")
        return _strip_hash(instance.get("url")) if instance is not None else None

    def channels(self, on_error=None) -> Dict[str, Channel]:
        """
        Every animation channel by target, nested animations included.

        When `on_error` is given, an animation that fails to parse is passed to
        it as (animation_id, error) and skipped; otherwise the error propagates.
        """
        section = self.animations
        channels = {}
        for position in range(len(section)):
            try:
                animation = section.item(position)
            except ColladaError as e:
                if on_error is None:
                    raise
                on_error(section.elements[position].id, e)
                continue
            for channel in animation.all_channels():
                channels[channel.target] = channel
        return channels
