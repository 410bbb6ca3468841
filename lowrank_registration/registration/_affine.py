"""Affine warp model.

An AffineMotion holds six parameters ``[a, b, c, d, tx, ty]`` and stands for
the homogeneous matrix::

    [[1 + a,     c, tx],
     [    b, 1 + d, ty],
     [    0,     0,  1]]

It maps coordinates of the shared reference frame ``(x, y)`` (x is the column,
y the row) to coordinates in the image it belongs to. All zeros is the
identity, which keeps small misalignments close to the origin of the
parameter space.
"""
from dataclasses import dataclass, field
from typing import Sequence, Tuple

import numpy as np

from ..errors import NumericalError
from ._typing_utils import FloatArray

# Below this absolute determinant the linear part is considered degenerate.
MIN_DETERMINANT = 1e-2

PARAMETER_COUNT = 6


@dataclass(frozen=True, eq=False)
class AffineMotion:
    """Immutable six-parameter affine motion."""

    params: FloatArray = field(default_factory=lambda: np.zeros(PARAMETER_COUNT))

    def __post_init__(self) -> None:
        params = np.array(self.params, dtype=np.float64).reshape(-1)
        if params.shape != (PARAMETER_COUNT,):
            raise ValueError(f"Expected {PARAMETER_COUNT} affine parameters, got {params.size}")
        params.setflags(write=False)
        object.__setattr__(self, "params", params)

    @classmethod
    def identity(cls) -> "AffineMotion":
        return cls(np.zeros(PARAMETER_COUNT))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> "AffineMotion":
        """Build a motion from a 3x3 (or 2x3) affine matrix."""
        m = np.asarray(matrix, dtype=np.float64)
        return cls(
            np.array(
                [
                    m[0, 0] - 1.0,
                    m[1, 0],
                    m[0, 1],
                    m[1, 1] - 1.0,
                    m[0, 2],
                    m[1, 2],
                ]
            )
        )

    def matrix(self) -> FloatArray:
        a, b, c, d, tx, ty = self.params
        return np.array(
            [
                [1.0 + a, c, tx],
                [b, 1.0 + d, ty],
                [0.0, 0.0, 1.0],
            ]
        )

    def linear(self) -> FloatArray:
        """The 2x2 linear part of the motion."""
        return self.matrix()[:2, :2]

    @property
    def translation(self) -> Tuple[float, float]:
        return float(self.params[4]), float(self.params[5])

    def determinant(self) -> float:
        return float(np.linalg.det(self.linear()))

    def is_invertible(self, min_determinant: float = MIN_DETERMINANT) -> bool:
        return bool(np.all(np.isfinite(self.params))) and abs(self.determinant()) >= min_determinant

    def apply(self, xs: np.ndarray, ys: np.ndarray) -> Tuple[FloatArray, FloatArray]:
        """Map reference-frame coordinates to image coordinates."""
        a, b, c, d, tx, ty = self.params
        xs = np.asarray(xs, dtype=np.float64)
        ys = np.asarray(ys, dtype=np.float64)
        return (1.0 + a) * xs + c * ys + tx, b * xs + (1.0 + d) * ys + ty

    def compose(self, other: "AffineMotion") -> "AffineMotion":
        """The motion applying ``other`` first, then ``self``."""
        return AffineMotion.from_matrix(self.matrix() @ other.matrix())

    def inverse(self) -> "AffineMotion":
        if not self.is_invertible(min_determinant=np.finfo(np.float64).tiny):
            raise NumericalError(f"Affine motion is not invertible: {self.params}")
        return AffineMotion.from_matrix(np.linalg.inv(self.matrix()))

    def jacobian(self, xs: np.ndarray, ys: np.ndarray) -> FloatArray:
        """Derivatives of the warped coordinates w.r.t. the six parameters.

        Returns:
            Array of shape (N, 2, 6): for each point, the rows are d(x')/dp
            and d(y')/dp. The motion is linear in its parameters so the
            jacobian does not depend on the current values.
        """
        xs = np.asarray(xs, dtype=np.float64).reshape(-1)
        ys = np.asarray(ys, dtype=np.float64).reshape(-1)
        ones = np.ones_like(xs)
        zeros = np.zeros_like(xs)
        jac = np.empty((xs.size, 2, PARAMETER_COUNT))
        jac[:, 0, :] = np.stack([xs, zeros, ys, zeros, ones, zeros], axis=1)
        jac[:, 1, :] = np.stack([zeros, xs, zeros, ys, zeros, ones], axis=1)
        return jac

    def scale_translation(self, factor: float) -> "AffineMotion":
        """Same linear part, translation multiplied by ``factor``.

        This is how a motion moves between pyramid levels: the linear part is
        scale invariant, translations are expressed in pixels of the level.
        """
        params = self.params.copy()
        params[4:] *= factor
        return AffineMotion(params)

    def conjugate_by_translation(self, dx: float, dy: float) -> "AffineMotion":
        """Lift a motion estimated on coordinates offset by (dx, dy).

        If the motion was estimated on coordinates ``x - dx`` (e.g. in a
        cropped region starting at column ``dx``), the returned motion acts
        on the original coordinates ``x``.
        """
        shift = np.array([[1.0, 0.0, dx], [0.0, 1.0, dy], [0.0, 0.0, 1.0]])
        unshift = np.array([[1.0, 0.0, -dx], [0.0, 1.0, -dy], [0.0, 0.0, 1.0]])
        return AffineMotion.from_matrix(shift @ self.matrix() @ unshift)

    def allclose(self, other: "AffineMotion", atol: float = 1e-8) -> bool:
        return bool(np.allclose(self.params, other.params, atol=atol, rtol=0.0))

    def to_list(self) -> list[float]:
        return [float(p) for p in self.params]

    def __repr__(self) -> str:
        values = ", ".join(f"{p:.6g}" for p in self.params)
        return f"AffineMotion([{values}])"


def motions_to_array(motions: Sequence[AffineMotion]) -> FloatArray:
    """Stack motions into an (n, 6) array."""
    if not motions:
        return np.zeros((0, PARAMETER_COUNT))
    return np.stack([m.params for m in motions])
