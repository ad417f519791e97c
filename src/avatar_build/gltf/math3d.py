"""
3D Math Helpers

Quaternions use the glTF component order ``[x, y, z, w]``. Matrices are 4x4
numpy arrays acting on column vectors (``M @ v``), so the translation lives in
``M[:3, 3]``. glTF stores matrices column-major; ``to_gltf_matrix`` and
``from_gltf_matrix`` convert between the two layouts.
"""

from typing import Sequence, Tuple

import numpy as np

IDENTITY_QUAT = np.array([0.0, 0.0, 0.0, 1.0])

_EPSILON = 1e-12


def quat_multiply(a: Sequence[float], b: Sequence[float]) -> np.ndarray:
    """Hamilton product ``a * b`` of two ``[x, y, z, w]`` quaternions."""
    x1, y1, z1, w1 = a
    x2, y2, z2, w2 = b
    return np.array([
        w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
        w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
        w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
        w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
    ])


def quat_normalize(q: Sequence[float]) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    norm = np.linalg.norm(q)
    if norm < _EPSILON:
        return IDENTITY_QUAT.copy()
    return q / norm


def quat_inverse(q: Sequence[float]) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    norm_sq = float(np.dot(q, q))
    if norm_sq < _EPSILON:
        return IDENTITY_QUAT.copy()
    return np.array([-q[0], -q[1], -q[2], q[3]]) / norm_sq


def quat_to_matrix3(q: Sequence[float]) -> np.ndarray:
    x, y, z, w = quat_normalize(q)
    return np.array([
        [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - z * w), 2.0 * (x * z + y * w)],
        [2.0 * (x * y + z * w), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - x * w)],
        [2.0 * (x * z - y * w), 2.0 * (y * z + x * w), 1.0 - 2.0 * (x * x + y * y)],
    ])


def matrix3_to_quat(m: np.ndarray) -> np.ndarray:
    """Convert a pure rotation matrix to a normalized quaternion."""
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        s = np.sqrt(trace + 1.0) * 2.0
        w = 0.25 * s
        x = (m[2, 1] - m[1, 2]) / s
        y = (m[0, 2] - m[2, 0]) / s
        z = (m[1, 0] - m[0, 1]) / s
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2]) * 2.0
        w = (m[2, 1] - m[1, 2]) / s
        x = 0.25 * s
        y = (m[0, 1] + m[1, 0]) / s
        z = (m[0, 2] + m[2, 0]) / s
    elif m[1, 1] > m[2, 2]:
        s = np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2]) * 2.0
        w = (m[0, 2] - m[2, 0]) / s
        x = (m[0, 1] + m[1, 0]) / s
        y = 0.25 * s
        z = (m[1, 2] + m[2, 1]) / s
    else:
        s = np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1]) * 2.0
        w = (m[1, 0] - m[0, 1]) / s
        x = (m[0, 2] + m[2, 0]) / s
        y = (m[1, 2] + m[2, 1]) / s
        z = 0.25 * s
    return quat_normalize([x, y, z, w])


def compose_trs(
    translation: Sequence[float],
    rotation: Sequence[float],
    scale: Sequence[float],
) -> np.ndarray:
    """Build ``T * R * S`` as a 4x4 matrix."""
    matrix = np.eye(4)
    matrix[:3, :3] = quat_to_matrix3(rotation) * np.asarray(scale, dtype=np.float64)
    matrix[:3, 3] = translation
    return matrix


def decompose_trs(matrix: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Split an affine matrix into translation, rotation and scale.

    A negative determinant is folded into the scale (all three axes negated),
    matching what glm::decompose does.

    Returns:
        Tuple of (translation, rotation quaternion, scale)
    """
    translation = np.array(matrix[:3, 3], dtype=np.float64)
    basis = np.array(matrix[:3, :3], dtype=np.float64)
    scale = np.linalg.norm(basis, axis=0)
    if np.linalg.det(basis) < 0.0:
        scale = -scale
    safe_scale = np.where(np.abs(scale) < _EPSILON, 1.0, scale)
    rotation = matrix3_to_quat(basis / safe_scale)
    return translation, rotation, scale


def rotate_vectors(rotation: Sequence[float], vectors: np.ndarray) -> np.ndarray:
    return vectors @ quat_to_matrix3(rotation).T


def normalize_rows(vectors: np.ndarray) -> np.ndarray:
    lengths = np.linalg.norm(vectors, axis=-1, keepdims=True)
    return vectors / np.where(lengths < _EPSILON, 1.0, lengths)


def to_gltf_matrix(matrix: np.ndarray) -> np.ndarray:
    """Flatten to the 16-float glTF layout (translation at elements 12-14)."""
    return np.asarray(matrix, dtype=np.float64).flatten(order="F")


def from_gltf_matrix(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).reshape(4, 4).T
