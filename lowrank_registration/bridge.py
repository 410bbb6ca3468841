"""Message-passing front end for hosts that run the aligner in a worker.

Hosts exchange ``{"type": ..., "data": ...}`` dictionaries with the worker:

- ``image-loaded``: data is ``{"id": str, "bytes": bytes}``, an encoded image
- ``run``: data is a dict of AlignmentParameters fields

and receive back ``log`` messages while registering, a ``motion`` message
with the flat motion vector, and a ``cropped-images`` message holding the
registered working region of every image, PNG encoded.
"""
import logging
import threading
from typing import Any, Callable, Optional, Union

import numpy as np

from .errors import ConfigurationError
from .image_io import decode_image, encode_image, to_grayscale
from .parameters import AlignmentParameters
from .preprocessing import prepare_working_images
from .registration._reprojection import reproject
from .registration.multires_registration import register_images

logger = logging.getLogger(__name__)

Message = dict[str, Any]


class _MessageLogHandler(logging.Handler):
    """Forwards log records to the host as "log" messages."""

    def __init__(self, post_message: Callable[[Message], None], level: int):
        super().__init__(level)
        self.post_message = post_message

    def emit(self, record: logging.LogRecord) -> None:
        self.post_message(
            {"type": "log", "data": {"lvl": record.levelno, "content": self.format(record)}}
        )


class AlignmentBridge:
    """Holds the images sent by a host and runs registrations on them."""

    def __init__(self, post_message: Optional[Callable[[Message], None]] = None):
        self.post_message = post_message if post_message is not None else (lambda _m: None)
        self._image_ids: list[str] = []
        self._images: list[np.ndarray] = []
        self._cropped_registered: list[np.ndarray] = []
        self._cancel = threading.Event()

    def load(self, image_id: str, data: bytes) -> None:
        """Decode and store one image; all images must share shape and dtype."""
        image = decode_image(data)
        if image.ndim == 3 and image.shape[2] in (2, 4):
            raise ConfigurationError(f"Alpha channel not supported (image {image_id!r})")
        if self._images:
            first = self._images[0]
            if image.shape != first.shape or image.dtype != first.dtype:
                raise ConfigurationError(
                    f"Image {image_id!r} is {image.shape} {image.dtype}, "
                    f"the loaded images are {first.shape} {first.dtype}"
                )
        self._images.append(image)
        self._image_ids.append(image_id)
        logger.info(f"Loaded image {image_id!r} {image.shape} {image.dtype}")

    def image_ids(self) -> list[str]:
        return list(self._image_ids)

    def cancel(self) -> None:
        """Ask a running registration to stop at its next iteration."""
        self._cancel.set()

    def run(self, params: Union[AlignmentParameters, dict[str, Any]]) -> list[float]:
        """Register the loaded images.

        Returns:
            The motions in the uncropped frame, flattened (6 values per image)
        """
        if not isinstance(params, AlignmentParameters):
            params = AlignmentParameters.model_validate(params)
        self._cropped_registered = []
        self._cancel.clear()
        if not self._images:
            return []

        gray_images = [to_grayscale(im) for im in self._images]
        crop = params.crop_frame
        result = register_images(
            gray_images,
            params.registration_config(),
            crop=crop,
            cancel_requested=self._cancel.is_set,
            equalize=params.equalize,
        )
        logger.info("Applying registration on cropped images ...")
        working = prepare_working_images(gray_images, crop, params.equalize)
        self._cropped_registered = reproject(working, result.crop_motions, params.out_of_bounds)
        return [float(v) for v in result.motion_vectors().ravel()]

    def cropped_image_file(self, index: int) -> bytes:
        """PNG encoding of the registered working region of image ``index``."""
        return encode_image(self._cropped_registered[index], format="PNG")

    def handle_message(self, message: Message) -> None:
        kind = message.get("type")
        data = message.get("data")
        if kind == "image-loaded":
            self.load(data["id"], data["bytes"])
        elif kind == "run":
            package_logger = logging.getLogger("lowrank_registration")
            handler = _MessageLogHandler(self.post_message, logging.INFO)
            previous_level = package_logger.level
            if package_logger.getEffectiveLevel() > logging.INFO:
                package_logger.setLevel(logging.INFO)
            package_logger.addHandler(handler)
            try:
                motions = self.run(data or {})
            finally:
                package_logger.removeHandler(handler)
                package_logger.setLevel(previous_level)
            self.post_message({"type": "motion", "data": motions})
            self.post_message(
                {
                    "type": "cropped-images",
                    "data": [
                        {"id": image_id, "bytes": self.cropped_image_file(i)}
                        for i, image_id in enumerate(self._image_ids)
                        if i < len(self._cropped_registered)
                    ],
                }
            )
        else:
            raise ConfigurationError(f"Unknown message type {kind!r}")
