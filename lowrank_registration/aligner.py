import logging
import pathlib
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from tqdm import tqdm

from . import image_io
from .benchmarking_util import debug_timing
from .parameters import AlignmentParameters
from .preprocessing import prepare_working_images
from .registration._reprojection import reproject
from .registration._typing_utils import CancelCallback
from .registration.multires_registration import RegistrationResult, register_images
from .registration.registration_viz import plot_convergence


@dataclass
class ProgressCallbacks:
    loaded_images: Callable[[int], None]
    starting_registration: Callable[[], None]
    starting_saving: Callable[[], None]
    finished: Callable[[RegistrationResult], None]

    @classmethod
    def no_op(cls):
        return cls(
            loaded_images=lambda _n: None,
            starting_registration=lambda: None,
            starting_saving=lambda: None,
            finished=lambda _result: None,
        )


@dataclass
class Paths:
    """Output layout of an alignment run."""

    output_folder: pathlib.Path

    @property
    def motions_csv(self) -> pathlib.Path:
        return self.output_folder / "motions.csv"

    @property
    def parameters_json(self) -> pathlib.Path:
        return self.output_folder / "parameters.json"

    @property
    def registered_dir(self) -> pathlib.Path:
        return self.output_folder

    @property
    def cropped_dir(self) -> pathlib.Path:
        return self.output_folder / "cropped"

    @property
    def cropped_aligned_dir(self) -> pathlib.Path:
        return self.output_folder / "cropped_aligned"

    @property
    def convergence_plot(self) -> pathlib.Path:
        return self.output_folder / "convergence.png"


def format_motions(result: RegistrationResult) -> str:
    """One "a, b, c, d, tx, ty" line per image."""
    return "\n".join(
        ", ".join(f"{p}" for p in motion.to_list()) for motion in result.motions
    )


class Aligner:
    def __init__(
        self,
        params: AlignmentParameters,
        callbacks: ProgressCallbacks = ProgressCallbacks.no_op(),
        cancel_requested: Optional[CancelCallback] = None,
    ):
        self.params = params
        self.callbacks = callbacks
        self.cancel_requested = cancel_requested
        self._paths: Paths | None = None
        self.tqdm_class = tqdm

    @property
    def paths(self) -> Paths:
        if self._paths is None:
            self._paths = Paths(pathlib.Path(self.params.out_dir))
        return self._paths

    def load_images(self) -> list[np.ndarray]:
        paths = image_io.expand_input_paths(self.params.inputs)
        logging.info(f"{len(paths)} images to be processed:")
        for path in paths:
            logging.info(f"    {path}")
        images = image_io.load_images(paths, tqdm_class=self.tqdm_class)
        self.callbacks.loaded_images(len(images))
        return images

    def save_outputs(
        self,
        images: list[np.ndarray],
        gray_images: list[np.ndarray],
        result: RegistrationResult,
    ) -> None:
        params = self.params
        self.callbacks.starting_saving()
        result.to_dataframe().to_csv(self.paths.motions_csv, index=False)
        params.to_json_file(str(self.paths.parameters_json))
        logging.info(f"Saved motions to {self.paths.motions_csv}")

        if params.save_crop:
            logging.info("Saving cropped + equalized images ...")
            working = prepare_working_images(gray_images, params.crop_frame, params.equalize)
            image_io.save_images(self.paths.cropped_dir, working, tqdm_class=self.tqdm_class)
            logging.info("Applying registration on cropped images ...")
            registered_working = reproject(working, result.crop_motions, params.out_of_bounds)
            image_io.save_images(
                self.paths.cropped_aligned_dir, registered_working, tqdm_class=self.tqdm_class
            )

        if params.save_imgs:
            logging.info("Applying registration on original images ...")
            with debug_timing("Reprojection"):
                registered = reproject(
                    self.tqdm_class(images, desc="Reprojecting", unit="image"),
                    result.motions,
                    params.out_of_bounds,
                )
            image_io.save_images(self.paths.registered_dir, registered, tqdm_class=self.tqdm_class)

        if params.save_plots and result.levels:
            plot_convergence(result, self.paths.convergence_plot)
            logging.info(f"Saved convergence plot to {self.paths.convergence_plot}")

    def run(self) -> RegistrationResult:
        """Load, register and write the outputs of the configured images."""
        stime = time.time()
        self.paths.output_folder.mkdir(exist_ok=True, parents=True)

        images = self.load_images()
        gray_images = [image_io.to_grayscale(im) for im in images]
        logging.info(f"Loading images took {time.time() - stime:.1f}s")

        self.callbacks.starting_registration()
        rtime = time.time()
        result = register_images(
            gray_images,
            self.params.registration_config(),
            crop=self.params.crop_frame,
            cancel_requested=self.cancel_requested,
            equalize=self.params.equalize,
        )
        logging.info(f"Registration took {time.time() - rtime:.1f}s")
        if result.failed:
            logging.error("Registration failed, the saved motions are the last valid ones")

        self.save_outputs(images, gray_images, result)
        self.callbacks.finished(result)
        logging.info(f"Total processing time: {time.time() - stime:.1f}s")
        return result
