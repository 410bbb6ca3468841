"""Map solver motions back to the input images and render registered images."""
from typing import Iterable, List, Optional, Sequence

import numpy as np

from ..parameters import CropFrame, OutOfBoundsPolicy
from ._affine import AffineMotion
from ._sampler import warp_image


def rescale_motion(motion: AffineMotion, level: int) -> AffineMotion:
    """Express a motion estimated at pyramid ``level`` at full resolution."""
    return motion.scale_translation(2.0**level)


def recover_original_motion(
    crop: Optional[CropFrame], motions: Sequence[AffineMotion]
) -> List[AffineMotion]:
    """Motions estimated in the cropped frame, expressed in the uncropped frame."""
    if crop is None:
        return list(motions)
    return [m.conjugate_by_translation(crop.left, crop.top) for m in motions]


def _cast_like(warped: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(warped), info.min, info.max).astype(dtype)
    return warped.astype(dtype)


def reproject(
    images: Iterable[np.ndarray],
    motions: Sequence[AffineMotion],
    policy: OutOfBoundsPolicy = OutOfBoundsPolicy.clamp,
) -> List[np.ndarray]:
    """Render every image in the reference frame defined by its motion.

    Images may be grayscale (height, width) or multi-channel
    (height, width, channels); the output keeps the input shape and dtype.
    """
    registered = []
    for image, motion in zip(images, motions, strict=True):
        image = np.asarray(image)
        registered.append(_cast_like(warp_image(image, motion, policy=policy), image.dtype))
    return registered
