"""Reading and writing images for the alignment front ends.

All readers return numpy arrays in (Y, X) or (Y, X, C) layout with the dtype
of the file (uint8 or uint16 for the usual PNG and TIFF captures). The
registration engine only consumes 2D grayscale arrays; ``to_grayscale``
performs that reduction once at the loader boundary.
"""
import glob
import io
import logging
import pathlib
from typing import Iterable, Optional, Sequence, Union

import numpy as np
import skimage.io
import skimage.util
import tifffile
from PIL import Image
from tqdm import tqdm

from .errors import ConfigurationError

TIFF_SUFFIXES = {".tif", ".tiff"}

PathLike = Union[str, pathlib.Path]


def expand_input_paths(patterns: Iterable[str]) -> list[pathlib.Path]:
    """Expand glob patterns (and plain paths) into a sorted list of files.

    Raises:
        ConfigurationError: If nothing matches
    """
    patterns = list(patterns)
    paths: set[pathlib.Path] = set()
    for pattern in patterns:
        matches = glob.glob(pattern)
        if not matches:
            logging.warning(f"No file matches {pattern!r}")
        paths.update(pathlib.Path(m).resolve() for m in matches if pathlib.Path(m).is_file())
    if not paths:
        raise ConfigurationError(f"No input image found for {list(patterns)}")
    return sorted(paths)


def read_image(path: PathLike) -> np.ndarray:
    path = pathlib.Path(path)
    if path.suffix.lower() in TIFF_SUFFIXES:
        return tifffile.imread(path)
    return skimage.io.imread(path)


def load_images(paths: Sequence[PathLike], tqdm_class=tqdm) -> list[np.ndarray]:
    """Load images that must all share the same shape and dtype.

    Raises:
        ConfigurationError: If the images are not consistent
    """
    images = []
    for path in tqdm_class(paths, desc="Loading images", unit="image"):
        image = read_image(path)
        logging.debug(f"Loaded {path}: {image.shape} {image.dtype}")
        if images and (image.shape != images[0].shape or image.dtype != images[0].dtype):
            raise ConfigurationError(
                f"{path} is {image.shape} {image.dtype}, "
                f"expected {images[0].shape} {images[0].dtype} like the first image"
            )
        images.append(image)
    return images


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Single channel view of an image; the green channel for RGB(A) images."""
    image = np.asarray(image)
    if image.ndim == 2:
        return image
    if image.ndim == 3:
        channels = image.shape[2]
        if channels >= 3:
            return image[..., 1]
        if channels in (1, 2):
            # Gray or gray + alpha.
            return image[..., 0]
    raise ConfigurationError(f"Unsupported image shape {image.shape}")


def decode_image(data: bytes) -> np.ndarray:
    """Decode an encoded image (PNG, TIFF, JPEG, ...) held in memory."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.mode == "P":
                img = img.convert("RGB")
            return np.array(img)
    except OSError as e:
        raise ConfigurationError(f"Could not decode image buffer: {e}") from e


def to_savable(image: np.ndarray) -> np.ndarray:
    """Integer images are kept as is, float images in [0, 1] become uint8."""
    image = np.asarray(image)
    if np.issubdtype(image.dtype, np.integer):
        return image
    return skimage.util.img_as_ubyte(np.clip(image, 0.0, 1.0))


def encode_image(image: np.ndarray, format: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(to_savable(image)).save(buffer, format=format)
    return buffer.getvalue()


def image_filename(index: int, count: int, suffix: str = ".png") -> str:
    width = max(2, len(str(max(count - 1, 0))))
    return f"{index:0{width}d}{suffix}"


def save_images(
    directory: PathLike,
    images: Sequence[np.ndarray],
    desc: Optional[str] = None,
    tqdm_class=tqdm,
) -> list[pathlib.Path]:
    """Write images as 00.png, 01.png, ... into ``directory``."""
    directory = pathlib.Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    written = []
    for i, image in enumerate(tqdm_class(images, desc=desc or f"Saving to {directory}", unit="image")):
        path = directory / image_filename(i, len(images))
        skimage.io.imsave(path, to_savable(image), check_contrast=False)
        written.append(path)
    logging.debug(f"Saved {len(written)} images to {directory}")
    return written
