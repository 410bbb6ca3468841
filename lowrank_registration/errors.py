"""Error and warning types raised by the registration engine.

ConfigurationError is the only category that prevents any output: it is raised
before a pyramid is built. Everything that happens afterwards either degrades
into a ConvergenceWarning or is reported as a NumericalError that the
iteration controller turns into a best-effort result.
"""
from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from .registration._affine import AffineMotion


class ConfigurationError(ValueError):
    """Invalid input images, crop frame or solver configuration."""


class NumericalError(ArithmeticError):
    """A level's solve failed numerically (SVD did not converge, non-finite data).

    The best motions observed before the failure are attached so that the
    caller can still return something usable.
    """

    def __init__(
        self,
        message: str,
        motions: Optional[Sequence["AffineMotion"]] = None,
        iterations: int = 0,
    ):
        super().__init__(message)
        self.motions = list(motions) if motions is not None else None
        self.iterations = iterations


class ConvergenceWarning(UserWarning):
    """The solver stopped without meeting its tolerances.

    Emitted when the iteration cap is reached, when some images had to be
    frozen because of ill-conditioned normal equations, or on cancellation.
    """
