"""Multi-resolution pyramid of the cropped working images."""
import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from skimage.measure import block_reduce

from ..errors import ConfigurationError
from ._typing_utils import FloatArray

logger = logging.getLogger(__name__)

# A level smaller than this cannot support a 6-parameter fit once the border
# margin is excluded.
MIN_LEVEL_SIDE_PX = 8


@dataclass(frozen=True)
class PyramidLevel:
    level: int
    """0 is full resolution, each following level halves the previous one."""
    images: Tuple[FloatArray, ...]

    @property
    def scale(self) -> float:
        """Scale factor of this level relative to full resolution."""
        return 1.0 / 2**self.level

    @property
    def shape(self) -> Tuple[int, int]:
        return self.images[0].shape


def level_shape(shape: Tuple[int, int], level: int) -> Tuple[int, int]:
    height, width = shape
    return height >> level, width >> level


def check_pyramid_levels(shape: Tuple[int, int], levels: int) -> None:
    """Check that ``levels`` pyramid levels of an image of ``shape`` are usable.

    Raises:
        ConfigurationError: If there are no levels or the coarsest one is too small
    """
    if levels < 1:
        raise ConfigurationError(f"At least one pyramid level is required, got {levels}")
    coarsest = level_shape(shape, levels - 1)
    if min(coarsest) < MIN_LEVEL_SIDE_PX:
        raise ConfigurationError(
            f"{levels} pyramid levels shrink a {shape[1]}x{shape[0]} working region "
            f"to {coarsest[1]}x{coarsest[0]}, below the minimum of "
            f"{MIN_LEVEL_SIDE_PX}x{MIN_LEVEL_SIDE_PX} pixels"
        )


def halve(image: np.ndarray) -> FloatArray:
    """2x2 mean pooling; an odd last row or column is dropped."""
    height, width = image.shape
    trimmed = image[: height - height % 2, : width - width % 2]
    return block_reduce(trimmed, block_size=(2, 2), func=np.mean)


def build_pyramid(images: Sequence[np.ndarray], levels: int) -> list[PyramidLevel]:
    """Build ``levels`` levels of every image, finest (level 0) first."""
    if not images:
        raise ConfigurationError("Cannot build a pyramid without images")
    check_pyramid_levels(images[0].shape, levels)

    current = tuple(np.array(im, dtype=np.float64) for im in images)
    pyramid = [PyramidLevel(0, current)]
    for level in range(1, levels):
        current = tuple(halve(im) for im in current)
        pyramid.append(PyramidLevel(level, current))
        logger.debug(f"Pyramid level {level}: {current[0].shape[1]}x{current[0].shape[0]}")
    return pyramid
