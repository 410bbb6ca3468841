"""Low-rank registration engine.

This module estimates one affine motion per image so that the stack of
warped images is as close as possible to a low-rank matrix.
"""

from .multires_registration import RegistrationResult, register_images
from ._admm_solver import ADMMSolver, LevelResult, SolverStatus, singular_value_threshold
from ._affine import AffineMotion
from ._pyramid import PyramidLevel, build_pyramid
from ._reprojection import recover_original_motion, reproject, rescale_motion
from ._sampler import Sampler, warp_image

__all__ = [
    'register_images',
    'RegistrationResult',
    'ADMMSolver',
    'LevelResult',
    'SolverStatus',
    'singular_value_threshold',
    'AffineMotion',
    'PyramidLevel',
    'build_pyramid',
    'recover_original_motion',
    'reproject',
    'rescale_motion',
    'Sampler',
    'warp_image',
]
