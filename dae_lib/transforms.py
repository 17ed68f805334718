import math
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
import pyrr


# pyrr builds matrices for row vectors (v @ M). Scene documents use column
# vectors (M @ v), so every pyrr matrix is transposed on the way out.


@dataclass
class TransformOp:
    """One entry of a node's transform stack: translate, rotate, scale or matrix."""
    kind: str
    values: Sequence[float]

    def to_matrix(self) -> np.ndarray:
        builder = TRANSFORM_BUILDERS.get(self.kind)
        if builder is None:
            raise ValueError(f"Unknown transform kind: {self.kind}")
        return builder(*self.values)


def identity() -> np.ndarray:
    return pyrr.matrix44.create_identity(dtype=float)


def translate(x, y, z) -> np.ndarray:
    return pyrr.matrix44.create_from_translation([x, y, z], dtype=float).T


def rotate(x, y, z, angle) -> np.ndarray:
    """Rotation of `angle` degrees about the axis (x, y, z)."""
    axis = np.array([x, y, z], dtype=float)
    return pyrr.matrix44.create_from_axis_rotation(axis, math.radians(angle), dtype=float).T


def scale(x, y, z) -> np.ndarray:
    return pyrr.matrix44.create_from_scale([x, y, z], dtype=float)


def matrix(*values) -> np.ndarray:
    # Row-major, as written in the document
    return np.array(values, dtype=float).reshape(4, 4)


TRANSFORM_BUILDERS = {
    "translate": translate,
    "rotate": rotate,
    "scale": scale,
    "matrix": matrix,
}

TRANSFORM_ARITY = {
    "translate": 3,
    "rotate": 4,
    "scale": 3,
    "matrix": 16,
}


def compose(ops: List[TransformOp]) -> np.ndarray:
    """Left-to-right product of the stack, seeded with identity."""
    product = identity()
    for op in ops:
        product = product @ op.to_matrix()
    return product


def is_identity(m) -> bool:
    return bool(np.allclose(np.asarray(m, dtype=float), identity()))


def flatten(m) -> List[float]:
    return [float(v) for v in np.asarray(m, dtype=float).reshape(-1)]
