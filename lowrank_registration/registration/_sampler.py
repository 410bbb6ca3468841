"""Bilinear sampling of images at real-valued coordinates.

The sampler returns intensities together with the local intensity gradient,
which is what the Gauss-Newton motion update needs. Gradients are centered
differences of the source image, interpolated the same way as intensities.
"""
from typing import NamedTuple, Tuple

import numpy as np

from ..parameters import OutOfBoundsPolicy
from ._affine import AffineMotion
from ._typing_utils import BoolArray, FloatArray


class SampleResult(NamedTuple):
    values: FloatArray
    grad_x: FloatArray
    grad_y: FloatArray
    valid: BoolArray


def pixel_grid(height: int, width: int) -> Tuple[FloatArray, FloatArray]:
    """Flattened (xs, ys) coordinates of every pixel, in row-major order."""
    ys, xs = np.mgrid[0:height, 0:width]
    return xs.ravel().astype(np.float64), ys.ravel().astype(np.float64)


class Sampler:
    """Samples one grayscale image; immutable once built."""

    def __init__(
        self,
        image: np.ndarray,
        policy: OutOfBoundsPolicy = OutOfBoundsPolicy.clamp,
    ):
        image = np.asarray(image, dtype=np.float64)
        if image.ndim != 2:
            raise ValueError(f"Sampler expects a 2D image, got shape {image.shape}")
        if min(image.shape) < 2:
            raise ValueError(f"Image too small to interpolate: {image.shape}")
        self.image = image
        self.policy = policy
        self.grad_y, self.grad_x = np.gradient(image)

    @property
    def height(self) -> int:
        return self.image.shape[0]

    @property
    def width(self) -> int:
        return self.image.shape[1]

    def _weights(self, xs: np.ndarray, ys: np.ndarray):
        # Clamp first so that every sample reads existing pixels; x0 stops at
        # width - 2 so that x0 + 1 is always a valid column.
        xc = np.clip(np.nan_to_num(xs, nan=0.0), 0.0, self.width - 1.0)
        yc = np.clip(np.nan_to_num(ys, nan=0.0), 0.0, self.height - 1.0)
        x0 = np.minimum(np.floor(xc).astype(np.intp), self.width - 2)
        y0 = np.minimum(np.floor(yc).astype(np.intp), self.height - 2)
        return x0, y0, xc - x0, yc - y0

    @staticmethod
    def _interpolate(arr: np.ndarray, x0, y0, fx, fy) -> FloatArray:
        top = arr[y0, x0] * (1.0 - fx) + arr[y0, x0 + 1] * fx
        bottom = arr[y0 + 1, x0] * (1.0 - fx) + arr[y0 + 1, x0 + 1] * fx
        return top * (1.0 - fy) + bottom * fy

    def _inside(self, xs: np.ndarray, ys: np.ndarray) -> Tuple[BoolArray, BoolArray]:
        inside_x = (xs >= 0.0) & (xs <= self.width - 1.0)
        inside_y = (ys >= 0.0) & (ys <= self.height - 1.0)
        return inside_x, inside_y

    def sample_values(self, xs: np.ndarray, ys: np.ndarray) -> FloatArray:
        xs = np.asarray(xs, dtype=np.float64)
        ys = np.asarray(ys, dtype=np.float64)
        x0, y0, fx, fy = self._weights(xs, ys)
        return self._interpolate(self.image, x0, y0, fx, fy)

    def sample(self, xs: np.ndarray, ys: np.ndarray) -> SampleResult:
        """Intensities and gradients at (xs, ys).

        Outside the image the clamped intensity is returned. The gradient
        component along a clamped direction is zero since the clamped image
        is constant there. With the ``invalid`` policy such samples are also
        flagged in ``valid`` so that callers can drop them.
        """
        xs = np.asarray(xs, dtype=np.float64)
        ys = np.asarray(ys, dtype=np.float64)
        x0, y0, fx, fy = self._weights(xs, ys)
        values = self._interpolate(self.image, x0, y0, fx, fy)
        grad_x = self._interpolate(self.grad_x, x0, y0, fx, fy)
        grad_y = self._interpolate(self.grad_y, x0, y0, fx, fy)

        inside_x, inside_y = self._inside(xs, ys)
        grad_x = np.where(inside_x, grad_x, 0.0)
        grad_y = np.where(inside_y, grad_y, 0.0)

        finite = np.isfinite(xs) & np.isfinite(ys)
        if self.policy == OutOfBoundsPolicy.invalid:
            valid = inside_x & inside_y & finite
        else:
            valid = finite
        return SampleResult(values, grad_x, grad_y, valid)

    def warp(
        self, motion: AffineMotion, shape: Tuple[int, int] | None = None
    ) -> SampleResult:
        """Sample the image under ``motion`` over a (height, width) grid."""
        height, width = shape if shape is not None else self.image.shape
        xs, ys = pixel_grid(height, width)
        return self.sample(*motion.apply(xs, ys))


def warp_image(
    image: np.ndarray,
    motion: AffineMotion,
    shape: Tuple[int, int] | None = None,
    policy: OutOfBoundsPolicy = OutOfBoundsPolicy.clamp,
) -> FloatArray:
    """Render ``image`` in the reference frame of ``motion``.

    Multi-channel images (height, width, channels) are warped channel by
    channel. The result is float64 with the same channel layout.
    """
    image = np.asarray(image)
    height, width = shape if shape is not None else image.shape[:2]
    xs, ys = pixel_grid(height, width)
    warped_xs, warped_ys = motion.apply(xs, ys)
    if image.ndim == 2:
        return Sampler(image, policy).sample_values(warped_xs, warped_ys).reshape(height, width)
    channels = [
        Sampler(image[..., c], policy).sample_values(warped_xs, warped_ys).reshape(height, width)
        for c in range(image.shape[2])
    ]
    return np.stack(channels, axis=-1)
