import logging
from typing import Optional, Sequence

import numpy as np

from .errors import ConfigurationError
from .parameters import CropFrame


def check_images(images: Sequence[np.ndarray]) -> None:
    """Check the images can be registered together.

    Raises:
        ConfigurationError: If there are fewer than two images, an image is
            not 2D, or the shapes differ
    """
    if len(images) < 2:
        raise ConfigurationError(f"At least two images are required, got {len(images)}")
    first_shape = np.shape(images[0])
    for i, image in enumerate(images):
        shape = np.shape(image)
        if len(shape) != 2:
            raise ConfigurationError(
                f"Image {i} has shape {shape}, expected a 2D grayscale image"
            )
        if shape != first_shape:
            raise ConfigurationError(
                f"Image {i} has shape {shape}, different from the first image {first_shape}"
            )


def crop_images(
    images: Sequence[np.ndarray], crop: Optional[CropFrame]
) -> list[np.ndarray]:
    if crop is None:
        return list(images)
    for image in images:
        crop.validate_for(np.shape(image))
    return [crop.apply(np.asarray(image)) for image in images]


def as_float_image(image: np.ndarray) -> np.ndarray:
    """float64 copy of an image, integer types normalized to [0, 1] by the dtype maximum."""
    image = np.asarray(image)
    if np.issubdtype(image.dtype, np.integer):
        return image.astype(np.float64) / np.iinfo(image.dtype).max
    if image.dtype == np.bool_:
        return image.astype(np.float64)
    return image.astype(np.float64, copy=True)


def equalize_mean(images: Sequence[np.ndarray], mean_intensity: float) -> list[np.ndarray]:
    """Scale float images so that they all have the given mean intensity.

    Values are clipped to [0, 1]. An image with a zero mean cannot be
    rescaled and is returned unchanged.
    """
    if not 0.0 <= mean_intensity <= 1.0:
        raise ConfigurationError(
            f"Expecting an intensity value in [0,1], got {mean_intensity}"
        )
    equalized = []
    for i, image in enumerate(images):
        mean = float(np.mean(image))
        if mean <= 0.0:
            logging.warning(f"Image {i} has a zero mean intensity, it is not equalized")
            equalized.append(np.asarray(image, dtype=np.float64))
            continue
        equalized.append(np.clip(image * (mean_intensity / mean), 0.0, 1.0))
    return equalized


def prepare_working_images(
    images: Sequence[np.ndarray],
    crop: Optional[CropFrame] = None,
    equalize: Optional[float] = None,
) -> list[np.ndarray]:
    """Validate, crop, convert to float and optionally equalize the images.

    The inputs are never modified.
    """
    check_images(images)
    working = [as_float_image(image) for image in crop_images(images, crop)]
    if equalize is not None:
        logging.info("Equalizing images mean intensities ...")
        working = equalize_mean(working, equalize)
    return working
