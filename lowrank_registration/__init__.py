"""Low-rank registration package.

This package aligns stacks of near-duplicate images, such as photometric
stereo captures, which differ by small affine misalignments.

Main functionality:
- Registration: coarse-to-fine ADMM minimizing the nuclear norm of the warped images
- Reprojection: render the registered images from the estimated motions
- Command line and message-passing front ends around the same engine

The package exposes the registration entry points at the top level for convenience.
"""

from .errors import ConfigurationError, ConvergenceWarning, NumericalError
from .parameters import AlignmentParameters, CropFrame, OutOfBoundsPolicy, RegistrationConfig
from .registration.multires_registration import RegistrationResult, register_images
from .registration._affine import AffineMotion
from .registration._reprojection import reproject

__all__ = [
    'register_images',
    'RegistrationResult',
    'RegistrationConfig',
    'AlignmentParameters',
    'CropFrame',
    'OutOfBoundsPolicy',
    'AffineMotion',
    'reproject',
    'ConfigurationError',
    'NumericalError',
    'ConvergenceWarning',
]
