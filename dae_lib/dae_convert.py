import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pyrr

from dae_lib.dae_parser import (
    Attribute,
    ColladaError,
    ControllerInstance,
    Geometry,
    Library,
    MissingVertexAttributeError,
    NodeType,
    NonTriangularSurfaceError,
    PolyList,
    Reference,
    ReferenceKind,
    SceneNode,
    Semantic,
    Skin,
    UnresolvedReferenceError,
    UnsupportedBindPoseError,
    VisualScene,
    merge_attributes,
)
from dae_lib.debug_stub import DebugConsole
from dae_lib.transforms import flatten, identity, is_identity


NO_PARENT = -1


# ==============================================================================
# 1. Vertex Formats
# ==============================================================================
class WeightFormat:
    """Exactly `count` (bone, weight) pairs: padded with (0, 0.0), lowest weights dropped."""

    def __init__(self, count: int):
        self.count = count

    def split(self, influences: Sequence[Tuple[int, float]]) -> Tuple[List[int], List[float]]:
        # Influences arrive sorted by weight, so truncation keeps the strongest.
        kept = list(influences[:self.count])
        kept += [(0, 0.0)] * (self.count - len(kept))
        return [bone for bone, _ in kept], [weight for _, weight in kept]

    def __call__(self, influences) -> List:
        bones, weights = self.split(influences)
        return bones + weights


def flip_texcoord(value) -> List[float]:
    return [value["S"], 1.0 - value["T"]]


class VertexFormat:
    def __init__(self, channels: List[Tuple[Semantic, Any]]):
        # Each channel is (semantic, components) where components is either a
        # tuple of field names or a callable receiving the attribute value.
        self.channels = channels

    def extract(self, attributes: Dict[Semantic, Any]) -> Tuple:
        result = []
        for semantic, components in self.channels:
            value = attributes.get(semantic)
            if value is None:
                raise MissingVertexAttributeError(
                    f"Vertex format requires {semantic.value} but the vertex only has "
                    f"{sorted(s.value for s in attributes)}",
                    channel=semantic.value,
                    available=sorted(s.value for s in attributes),
                )
            if callable(components):
                result.extend(components(value))
                continue
            for key in components:
                if key not in value:
                    raise MissingVertexAttributeError(
                        f"{semantic.value} has no component '{key}' (has {sorted(value)})",
                        channel=f"{semantic.value}.{key}",
                        available=sorted(value),
                    )
                result.append(value[key])
        return tuple(result)


XYZ = ("X", "Y", "Z")

VERTEX_FORMATS = {
    "p3": VertexFormat([(Semantic.POSITION, XYZ)]),
    "p3n3": VertexFormat([(Semantic.POSITION, XYZ), (Semantic.NORMAL, XYZ)]),
    "p3n3m2": VertexFormat([(Semantic.POSITION, XYZ), (Semantic.NORMAL, XYZ), (Semantic.TEXCOORD, flip_texcoord)]),
    "p3n3m2b2": VertexFormat([
        (Semantic.POSITION, XYZ), (Semantic.NORMAL, XYZ), (Semantic.TEXCOORD, flip_texcoord),
        (Semantic.WEIGHT, WeightFormat(2)),
    ]),
    "p3n3m2b4": VertexFormat([
        (Semantic.POSITION, XYZ), (Semantic.NORMAL, XYZ), (Semantic.TEXCOORD, flip_texcoord),
        (Semantic.WEIGHT, WeightFormat(4)),
    ]),
}


# ==============================================================================
# 2. Vertex interning
# ==============================================================================
class Vertex:
    """A polygon corner. Equality and hashing use only the formatted key."""

    def __init__(self, attributes: List[Attribute], format: VertexFormat):
        self.attributes = merge_attributes(attributes)
        self.format = format
        self._key = None

    def key(self) -> Tuple:
        if self._key is None:
            self._key = self.format.extract(self.attributes)
        return self._key

    @property
    def index(self) -> int:
        """Position of this corner in the <vertices> bundle, before de-duplication."""
        vertex = self.attributes.get(Semantic.VERTEX)
        if vertex is None:
            raise MissingVertexAttributeError(
                "Vertex has no VERTEX input; skin weights can't be bound",
                channel=Semantic.VERTEX.value,
                available=sorted(s.value for s in self.attributes),
            )
        return vertex["index"]

    def bind_weights(self, influences):
        self.attributes[Semantic.WEIGHT] = influences
        self._key = None

    def __eq__(self, other):
        return isinstance(other, Vertex) and self.key() == other.key()

    def __hash__(self):
        return hash(self.key())


class MeshBuilder:
    def __init__(self):
        self.indices: List[int] = []
        # key -> index
        self.index_of: Dict[Tuple, int] = {}
        # index -> vertex, first-seen order
        self.vertices: List[Vertex] = []

    def __len__(self):
        return len(self.vertices)

    def append(self, vertex: Vertex) -> int:
        key = vertex.key()
        index = self.index_of.get(key)
        if index is None:
            index = len(self.vertices)
            self.index_of[key] = index
            self.vertices.append(vertex)
        self.indices.append(index)
        return index

    def unique_vertices(self) -> List[Tuple]:
        return [v.key() for v in self.vertices]


# ==============================================================================
# 3. Skeleton
# ==============================================================================
def check_bind_pose(controller: Skin):
    if not is_identity(controller.bind_shape_transform):
        raise UnsupportedBindPoseError(
            f"Controller '{controller.id}' has a non-identity bind shape matrix", controller.id
        )


class Skeleton:
    """Joint subtree flattened in pre-order; parents always precede children."""

    def __init__(self, library: Library, scene: VisualScene, node: SceneNode, controller: Skin):
        check_bind_pose(controller)
        self.library = library
        self.scene = scene
        self.node = node
        self.controller = controller
        self.bones: List[Tuple[int, SceneNode]] = []
        self.indexed: Dict[str, int] = {}
        self._by_sid: Dict[str, int] = {}
        # Nodes without an id still need to be found as parents
        self._by_node: Dict[SceneNode, int] = {}
        self._extract_skeleton(node)

    def _extract_skeleton(self, top: SceneNode):
        self._add_bone(NO_PARENT, top)
        for node in self.scene.traverse(top.children):
            if node.type != NodeType.JOINT:
                continue
            self._add_bone(self._parent_index(node, top), node)

    def _add_bone(self, parent_index, node):
        index = len(self.bones)
        self.bones.append((parent_index, node))
        self._by_node[node] = index
        if node.id is not None:
            self.indexed[node.id] = index
        if node.sid is not None:
            self._by_sid.setdefault(node.sid, index)

    def _parent_index(self, node, top):
        for ancestor in node.parents():
            if ancestor is top:
                return 0
            if ancestor.type == NodeType.JOINT and ancestor in self._by_node:
                return self._by_node[ancestor]
        return 0

    def bone_index(self, joint_name) -> int:
        index = self.indexed.get(joint_name, self._by_sid.get(joint_name))
        if index is None:
            raise UnresolvedReferenceError(
                f"Joint '{joint_name}' is not part of skeleton '{self.node.id}'",
                kind=ReferenceKind.NODE,
                reference_id=joint_name,
                element_id=self.controller.id,
            )
        return index

    def indexed_weights(self) -> List[List[Tuple[int, float]]]:
        result = []
        for vertex in self.controller.weights.raw_weights():
            output = [(self.bone_index(joint), float(weight)) for joint, weight in vertex]
            # Stable: equal weights keep their document order
            result.append(sorted(output, key=lambda influence: -influence[1]))
        return result

    def inverse_bind_matrices(self) -> List[np.ndarray]:
        from_skin = self.controller.inverse_bind_matrices()
        matrices = []
        for _, bone in self.bones:
            m = from_skin.get(bone.id, from_skin.get(bone.sid))
            if m is None:
                world = bone.transform_matrix()
                m = pyrr.matrix44.inverse(world) if np.linalg.det(world) != 0 else identity()
            matrices.append(m)
        return matrices


# ==============================================================================
# 4. Payloads
# ==============================================================================
@dataclass
class MeshPayload:
    id: str
    index_stream: List[int]
    unique_vertices: List[Tuple]
    vertex_format_name: str
    sub_meshes: List[Dict] = field(default_factory=list)

    def vertex_array(self) -> np.ndarray:
        return np.array(self.unique_vertices, dtype=np.float32)

    def index_array(self) -> np.ndarray:
        return np.array(self.index_stream, dtype=np.uint32)


@dataclass
class BonePayload:
    bone_id: str
    parent_index: int
    bind_matrix: List[float]
    inverse_bind_matrix: List[float]


@dataclass
class BoneAnimation:
    bone_id: str
    bone_index: int
    keyframes: List[Tuple[str, float, List[float]]]


@dataclass
class SkeletonPayload:
    id: str
    mesh_id: str
    bones: List[BonePayload]
    animations: List[BoneAnimation] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0


@dataclass
class NodePayload:
    id: str
    transform: List[float]
    instances: List[str]
    children: List["NodePayload"] = field(default_factory=list)


class ConversionStage(str, Enum):
    UNVISITED = "unvisited"
    GEOMETRY_RESOLVED = "geometry-resolved"
    SKELETON_RESOLVED = "skeleton-resolved"
    WEIGHTS_BOUND = "weights-bound"
    EMITTED = "emitted"


@dataclass
class ConversionFailure:
    node_id: Optional[str]
    stage: ConversionStage
    error: ColladaError

    def describe(self):
        return f"{type(self.error).__name__} at node '{self.node_id}' ({self.stage.value}): {self.error}"


@dataclass
class ConversionResult:
    meshes: List[MeshPayload] = field(default_factory=list)
    skeletons: List[SkeletonPayload] = field(default_factory=list)
    nodes: List[NodePayload] = field(default_factory=list)
    top: Dict[str, str] = field(default_factory=dict)
    failures: List[ConversionFailure] = field(default_factory=list)

    def mesh(self, mesh_id) -> Optional[MeshPayload]:
        return next((m for m in self.meshes if m.id == mesh_id), None)

    def skeleton(self, skeleton_id) -> Optional[SkeletonPayload]:
        return next((s for s in self.skeletons if s.id == skeleton_id), None)

    def to_dict(self) -> Dict:
        return {
            "meshes": [asdict(m) for m in self.meshes],
            "skeletons": [asdict(s) for s in self.skeletons],
            "nodes": [asdict(n) for n in self.nodes],
            "top": dict(self.top),
            "failures": [f.describe() for f in self.failures],
        }


# ==============================================================================
# 5. Conversion Orchestrator
# ==============================================================================
@dataclass
class ConversionOptions:
    vertex_format: str = "p3n3m2"
    skinned_vertex_format: str = "p3n3m2b4"
    include_nodes: bool = False
    scene_id: Optional[str] = None

    def validate(self):
        for name in (self.vertex_format, self.skinned_vertex_format):
            if name not in VERTEX_FORMATS:
                raise ValueError(f"Unknown vertex format '{name}' (known: {', '.join(VERTEX_FORMATS)})")


class SceneConverter:
    def __init__(self, library: Library, options: Optional[ConversionOptions] = None):
        self.library = library
        self.options = options or ConversionOptions()
        self.options.validate()
        self.result = ConversionResult()
        self._emitted: Dict[Tuple, Any] = {}
        self._channels = None

    # --- scene walk ---
    def convert(self) -> ConversionResult:
        for scene in self._scenes():
            for node in scene.nodes:
                self._convert_node(scene, node, set())
            if self.options.include_nodes:
                self.result.nodes.extend(self._node_payload(n) for n in scene.nodes if n.type == NodeType.NODE)
        DebugConsole.log(
            f"Converted {len(self.result.meshes)} mesh(es), {len(self.result.skeletons)} skeleton(s); "
            f"{len(self.result.failures)} failure(s)"
        )
        return self.result

    def _scenes(self) -> List[VisualScene]:
        scenes = self.library.visual_scenes
        scene_id = self.options.scene_id or self.library.scene_id()
        if scene_id is None:
            return list(scenes)
        scene = scenes.get(scene_id)
        if scene is None:
            raise UnresolvedReferenceError(
                f"No visual scene '{scene_id}'", reference_id=scene_id
            )
        return [scene]

    def _convert_node(self, scene: VisualScene, node: SceneNode, visiting: set):
        staged = []
        stage = [ConversionStage.UNVISITED]
        try:
            for instance in node.instances:
                self._convert_instance(scene, node, instance, staged, stage, visiting)
        except ColladaError as e:
            failure = ConversionFailure(node.id, stage[0], e)
            self.result.failures.append(failure)
            DebugConsole.warning(f"Skipping subtree: {failure.describe()}")
            return
        for kind, key, payload, top_name in staged:
            self._emit(kind, key, payload, top_name)
        stage[0] = ConversionStage.EMITTED
        for child in node.children:
            self._convert_node(scene, child, visiting)

    def _convert_instance(self, scene, node, instance: Reference, staged, stage, visiting):
        stage[0] = ConversionStage.UNVISITED
        if instance.kind == ReferenceKind.GEOMETRY:
            geometry = instance.lookup(self.library)
            stage[0] = ConversionStage.GEOMETRY_RESOLVED
            key = ("geometry", geometry.id)
            if key not in self._emitted:
                payload = self.convert_geometry(geometry, self.options.vertex_format)
                staged.append(("mesh", key, payload, geometry.name or geometry.id))
        elif instance.kind == ReferenceKind.CONTROLLER:
            controller = instance.lookup(self.library)
            key = ("controller", controller.id, tuple(instance.skeletons))
            if key not in self._emitted:
                mesh, skeleton = self.convert_controller(scene, instance, controller, stage)
                staged.append(("mesh", ("skinned",) + key[1:], mesh, None))
                staged.append(("skeleton", key, skeleton, controller.name or controller.id))
        elif instance.kind == ReferenceKind.NODE:
            if instance.id in visiting:
                DebugConsole.warning(f"Ignoring cyclic instance_node '{instance.id}' under '{node.id}'")
                return
            referenced = instance.lookup(self.library)
            for inner in referenced.traverse():
                for inner_instance in inner.instances:
                    self._convert_instance(scene, inner, inner_instance, staged, stage, visiting | {instance.id})

    def _emit(self, kind, key, payload, top_name):
        if key in self._emitted:
            return
        self._emitted[key] = payload
        if kind == "mesh":
            self.result.meshes.append(payload)
        else:
            self.result.skeletons.append(payload)
        if top_name is not None:
            self.result.top[top_name] = payload.id

    # --- geometry ---
    def convert_geometry(self, geometry: Geometry, format_name, weights=None, mesh_id=None) -> MeshPayload:
        vertex_format = VERTEX_FORMATS[format_name]
        builder = MeshBuilder()
        sub_meshes = []
        for polygons in geometry.mesh.polygons:
            counts = list(polygons.shape.counts[:polygons.count]) if isinstance(polygons.shape, PolyList) else []
            if any(c != 3 for c in counts):
                raise NonTriangularSurfaceError(
                    f"Geometry '{geometry.id}' has non-triangular surfaces (max {max(counts)} sides)",
                    counts=counts,
                    element_id=geometry.id,
                )
            first_index = len(builder.indices)
            for polygon in polygons:
                for attributes in polygon:
                    vertex = Vertex(attributes, vertex_format)
                    if weights is not None:
                        vertex.bind_weights(self._weights_for(weights, vertex, geometry))
                    try:
                        builder.append(vertex)
                    except MissingVertexAttributeError as e:
                        e.element_id = geometry.id
                        raise
            sub_meshes.append({
                "material": polygons.material,
                "first_index": first_index,
                "index_count": len(builder.indices) - first_index,
            })
        return MeshPayload(mesh_id or geometry.id, builder.indices, builder.unique_vertices(), format_name, sub_meshes)

    def _weights_for(self, weights, vertex: Vertex, geometry: Geometry):
        index = vertex.index
        if index >= len(weights):
            raise MissingVertexAttributeError(
                f"Geometry '{geometry.id}' vertex {index} has no skin weights ({len(weights)} weighted vertices)",
                channel=Semantic.WEIGHT.value,
                element_id=geometry.id,
            )
        return weights[index]

    # --- controllers ---
    def convert_controller(self, scene: VisualScene, instance: ControllerInstance, controller: Skin, stage):
        check_bind_pose(controller)
        geometry = controller.source.lookup(self.library)
        stage[0] = ConversionStage.GEOMETRY_RESOLVED

        if not instance.skeletons:
            raise UnresolvedReferenceError(
                f"Controller instance '{controller.id}' names no skeleton",
                kind=ReferenceKind.NODE,
                element_id=controller.id,
            )
        top_joint = scene[instance.skeletons[0]]
        skeleton = Skeleton(self.library, scene, top_joint, controller)
        stage[0] = ConversionStage.SKELETON_RESOLVED

        weights = skeleton.indexed_weights()
        stage[0] = ConversionStage.WEIGHTS_BOUND

        mesh = self.convert_geometry(
            geometry, self.options.skinned_vertex_format, weights, mesh_id=f"{controller.id}/{geometry.id}"
        )
        return mesh, self.skeleton_payload(controller, skeleton, mesh)

    def skeleton_payload(self, controller: Skin, skeleton: Skeleton, mesh: MeshPayload) -> SkeletonPayload:
        inverse_binds = skeleton.inverse_bind_matrices()
        bones = [
            BonePayload(bone.id, parent, flatten(bone.transform_matrix()), flatten(inverse_binds[i]))
            for i, (parent, bone) in enumerate(skeleton.bones)
        ]
        payload = SkeletonPayload(controller.id, mesh.id, bones)

        channels = self.channels()
        times = []
        for index, (_, bone) in enumerate(skeleton.bones):
            channel = channels.get(f"{bone.id}/transform")
            if channel is None:
                continue
            keyframes = [(k.interpolation, k.time, k.transform) for k in channel.keyframes()]
            payload.animations.append(BoneAnimation(bone.id, index, keyframes))
            times.extend(k[1] for k in keyframes)
        if times:
            payload.start_time, payload.end_time = min(times), max(times)
        return payload

    def channels(self):
        if self._channels is None:
            self._channels = self.library.channels(on_error=self._animation_failed)
        return self._channels

    def _animation_failed(self, animation_id, error: ColladaError):
        failure = ConversionFailure(animation_id, ConversionStage.UNVISITED, error)
        self.result.failures.append(failure)
        DebugConsole.warning(f"Skipping animation: {failure.describe()}")

    # --- node hierarchy ---
    def _node_payload(self, node: SceneNode) -> NodePayload:
        return NodePayload(
            node.id,
            flatten(node.local_transform_matrix()),
            [instance.id for instance in node.instances],
            [self._node_payload(c) for c in node.children if c.type == NodeType.NODE],
        )


def convert_file(path, options: Optional[ConversionOptions] = None) -> ConversionResult:
    """
    Parses a DAE file and converts every instanced geometry and controller.

    Returns a ConversionResult; entities that failed are listed in
    `result.failures` rather than raised.
    """
    library = Library.from_file(path)
    result = SceneConverter(library, options).convert()

    DebugConsole.log(f"\n--- Conversion Summary for: {os.path.basename(str(path))} ---")
    for mesh in result.meshes:
        DebugConsole.log(
            f"[Mesh] '{mesh.id}': {len(mesh.unique_vertices)} unique vertices, "
            f"{len(mesh.index_stream) // 3} triangles ({mesh.vertex_format_name})"
        )
    for skeleton in result.skeletons:
        DebugConsole.log(
            f"[Skeleton] '{skeleton.id}': {len(skeleton.bones)} bones, "
            f"{len(skeleton.animations)} animated, {skeleton.start_time:.2f}-{skeleton.end_time:.2f}s"
        )
    for failure in result.failures:
        DebugConsole.log(f"[Failure] {failure.describe()}")
    DebugConsole.log("--- End of Conversion Summary ---\n")
    return result
