"""Coarse-to-fine low-rank registration of a stack of images.

The entry point is :func:`register_images`. It validates and crops the
inputs, builds a multi-resolution pyramid and runs the ADMM solver on each
level from the coarsest to the finest, seeding every level with the motions
found on the previous one.
"""
import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from ..benchmarking_util import debug_timing
from ..errors import ConvergenceWarning, NumericalError
from ..parameters import CropFrame, RegistrationConfig
from ..preprocessing import prepare_working_images
from ._admm_solver import ADMMSolver, LevelResult, SolverStatus
from ._affine import AffineMotion, motions_to_array
from ._pyramid import build_pyramid
from ._reprojection import recover_original_motion, rescale_motion
from ._typing_utils import CancelCallback

logger = logging.getLogger(__name__)

MOTION_COLUMNS = ["a", "b", "c", "d", "tx", "ty"]


@dataclass
class RegistrationResult:
    motions: List[AffineMotion]
    """One motion per input image, at full resolution in the uncropped frame."""
    crop_motions: List[AffineMotion]
    """The same motions, expressed in the cropped working frame."""
    levels: List[LevelResult] = field(default_factory=list)
    """Diagnostics of every solved level, coarsest first."""
    failed: bool = False
    cancelled: bool = False
    warnings: List[str] = field(default_factory=list)

    def motion_vectors(self) -> np.ndarray:
        return motions_to_array(self.motions)

    def to_dataframe(self) -> pd.DataFrame:
        df = pd.DataFrame(self.motion_vectors(), columns=MOTION_COLUMNS)
        df.insert(0, "image", range(len(self.motions)))
        return df


def _report(message: str, messages: List[str]) -> None:
    logger.warning(message)
    messages.append(message)
    warnings.warn(message, ConvergenceWarning, stacklevel=3)


def register_images(
    images: Sequence[np.ndarray],
    config: Optional[RegistrationConfig] = None,
    crop: Optional[CropFrame] = None,
    cancel_requested: Optional[CancelCallback] = None,
    equalize: Optional[float] = None,
) -> RegistrationResult:
    """Estimate one affine motion per image aligning the stack.

    Args:
        images: Grayscale 2D images of identical shape; they are not modified
        config: Engine configuration, defaults to RegistrationConfig()
        crop: Optional working region; motions are still returned in the
            frame of the uncropped images
        cancel_requested: Polled once per iteration, registration stops with
            the best motions so far when it returns True
        equalize: Optional target mean intensity of the working images

    Returns:
        RegistrationResult. Motions map reference coordinates to image
        coordinates, image 0 being the reference (identity motion).

    Raises:
        ConfigurationError: If the inputs or the configuration are unusable
    """
    if config is None:
        config = RegistrationConfig()
    working = prepare_working_images(images, crop, equalize)
    with debug_timing("Pyramid construction"):
        pyramid = build_pyramid(working, config.levels)

    solver = ADMMSolver(config, cancel_requested)
    motions = [AffineMotion.identity() for _ in working]
    motions_level = len(pyramid) - 1
    level_results: List[LevelResult] = []
    messages: List[str] = []
    failed = False
    cancelled = False

    for level in reversed(pyramid):
        if level.level != motions_level:
            factor = 2.0 ** (motions_level - level.level)
            motions = [m.scale_translation(factor) for m in motions]
            motions_level = level.level
        height, width = level.shape
        logger.info(f"Registering level {level.level} ({width}x{height} px)")

        try:
            with debug_timing(f"Level {level.level} solve"):
                result = solver.solve(level, motions)
        except NumericalError as e:
            if e.motions:
                motions = list(e.motions)
            failed = True
            _report(
                f"Numerical failure on level {level.level} after {e.iterations} iterations: {e}",
                messages,
            )
            break

        level_results.append(result)
        motions = list(result.motions)
        logger.info(
            f"Level {level.level}: {result.status.value} after {result.iterations} iterations, "
            f"primal residual {result.primal_residual:.3e}, "
            f"motion update {result.parameter_update:.3e}"
        )

        if result.status == SolverStatus.CANCELLED:
            cancelled = True
            _report(f"Registration cancelled on level {level.level}", messages)
            break
        if result.status == SolverStatus.MAX_ITER_REACHED:
            message = f"Level {level.level} did not converge in {result.iterations} iterations"
            # Coarse levels only seed the next one; the finest level decides.
            if level.level == 0:
                _report(message, messages)
            else:
                logger.info(message)
        elif result.status == SolverStatus.ILL_CONDITIONED:
            _report(
                f"Level {level.level}: motions of images {result.ill_conditioned} "
                "could not be estimated (ill-conditioned), they were kept fixed",
                messages,
            )

    crop_motions = [rescale_motion(m, motions_level) for m in motions]
    return RegistrationResult(
        motions=recover_original_motion(crop, crop_motions),
        crop_motions=crop_motions,
        levels=level_results,
        failed=failed,
        cancelled=cancelled,
        warnings=messages,
    )
