import enum
import logging
from dataclasses import dataclass
from typing import Annotated, Optional, Sequence

import numpy as np
from pydantic import AfterValidator, BaseModel, Field, model_validator

from .errors import ConfigurationError

DEFAULT_LEVELS = 4
DEFAULT_MAX_ITERATIONS = 40
DEFAULT_PRIMAL_TOLERANCE = 1e-3
DEFAULT_PARAMETER_TOLERANCE = 1e-3
DEFAULT_MU = 0.1
DEFAULT_MU_GROWTH_FACTOR = 1.0
DEFAULT_MU_MAX = 1e6
DEFAULT_SPARSE_GRADIENT_THRESHOLD = 0.01
DEFAULT_OUT_DIR = "out"


class OutOfBoundsPolicy(enum.Enum):
    """What the sampler does with coordinates falling outside an image."""

    clamp = "clamp"
    invalid = "invalid"


@dataclass(frozen=True)
class CropFrame:
    """A (left, top, right, bottom) working region, right and bottom exclusive."""

    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @classmethod
    def from_sequence(cls, coords: Sequence[int]) -> "CropFrame":
        if len(coords) != 4:
            raise ConfigurationError(
                f"A crop frame needs 4 values (left, top, right, bottom), got {len(coords)}"
            )
        left, top, right, bottom = (int(c) for c in coords)
        return cls(left, top, right, bottom)

    @classmethod
    def from_string(cls, text: str) -> "CropFrame":
        """Parse a "left,top,right,bottom" string."""
        try:
            coords = [int(part.strip()) for part in text.split(",")]
        except ValueError:
            raise ConfigurationError(f"Could not parse crop frame from {text!r}")
        return cls.from_sequence(coords)

    def validate_for(self, shape: tuple[int, ...]) -> None:
        """Check the frame is non-empty and lies within an image of this shape.

        Raises:
            ConfigurationError: If the frame is empty or out of bounds
        """
        height, width = shape[:2]
        if self.right <= self.left or self.bottom <= self.top:
            raise ConfigurationError(
                f"Empty crop frame {self}: right must be > left and bottom > top"
            )
        if self.left < 0 or self.top < 0 or self.right > width or self.bottom > height:
            raise ConfigurationError(
                f"Crop frame {self} does not fit in an image of size {width}x{height}"
            )

    def apply(self, image: np.ndarray) -> np.ndarray:
        return image[self.top : self.bottom, self.left : self.right]

    def __str__(self) -> str:
        return f"{self.left},{self.top},{self.right},{self.bottom}"


def crop_string_is_valid(crop: Optional[str]) -> Optional[str]:
    """Pydantic validator to check a crop string parses."""
    if crop is not None:
        CropFrame.from_string(crop)
    return crop


def equalize_in_unit_range(value: Optional[float]) -> Optional[float]:
    """Pydantic validator for the mean intensity used to equalize images."""
    if value is not None and not 0.0 <= value <= 1.0:
        raise ValueError(f"Expecting an intensity value in [0,1], got {value}")
    return value


class RegistrationConfig(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Parameters of the low-rank registration engine."""

    levels: int = DEFAULT_LEVELS
    """Number of levels for the multi-resolution approach (1 means full resolution only)."""

    max_iterations: Annotated[int, Field(ge=1)] = DEFAULT_MAX_ITERATIONS
    """Maximum number of solver iterations per pyramid level."""

    primal_tolerance: Annotated[float, Field(ge=0.0)] = DEFAULT_PRIMAL_TOLERANCE
    """Stop when ||D - L|| / ||D|| falls below this (D: warped images, L: low-rank target)."""

    parameter_tolerance: Annotated[float, Field(ge=0.0)] = DEFAULT_PARAMETER_TOLERANCE
    """Stop when the largest per-image motion update norm falls below this."""

    mu: Annotated[float, Field(gt=0.0)] = DEFAULT_MU
    """Initial Lagrangian penalty; singular values are shrunk by 1/mu."""

    mu_growth_factor: Annotated[float, Field(ge=1.0)] = DEFAULT_MU_GROWTH_FACTOR
    """Multiplicative growth of mu after each iteration (1.0 keeps mu fixed)."""

    mu_max: Annotated[float, Field(gt=0.0)] = DEFAULT_MU_MAX
    """Upper bound for mu when it grows."""

    out_of_bounds: OutOfBoundsPolicy = OutOfBoundsPolicy.clamp
    """How samples outside an image are handled.

    clamp uses the nearest border pixel; invalid also uses it for the warped
    image but excludes the pixel from the motion update.
    """

    sparse_weight: Optional[Annotated[float, Field(gt=0.0)]] = None
    """Weight of an optional L1 sparse-error term (robust PCA style).

    Unset (default) means pure nuclear-norm minimization.
    """

    sparse_ratio_threshold: Optional[Annotated[float, Field(gt=0.0, le=1.0)]] = None
    """Switch between dense and sparse resolution on each level.

    A level is solved on its high-gradient pixels only when they make up at
    most this fraction of the level, and on every pixel otherwise. Unset
    (default) always solves densely.
    """

    sparse_gradient_threshold: Annotated[float, Field(gt=0.0)] = DEFAULT_SPARSE_GRADIENT_THRESHOLD
    """Gradient magnitude (|dI/dx| + |dI/dy|, intensities in [0,1]) above which a pixel is selected for a sparse solve."""

    workers: Annotated[int, Field(ge=1)] = 1
    """Number of threads used for the per-image motion updates."""

    @model_validator(mode="after")
    def check_mu_bounds(self) -> "RegistrationConfig":
        if self.mu_max < self.mu:
            raise ValueError(f"mu_max ({self.mu_max}) must be >= mu ({self.mu})")
        return self


class AlignmentParameters(RegistrationConfig):
    """Parameters of a full alignment run: inputs, outputs and engine configuration."""

    inputs: list[str] = Field(default_factory=list)
    """Paths to images, or glob patterns such as "img/*.png"."""

    crop: Annotated[Optional[str], AfterValidator(crop_string_is_valid)] = None
    """Crop images into a restricted working area, given as "left,top,right,bottom"."""

    equalize: Annotated[Optional[float], AfterValidator(equalize_in_unit_range)] = None
    """Value in [0.0, 1.0]. Equalize the mean intensity of all cropped images.

    This makes all images equally important when computing the aggregated
    singular values.
    """

    out_dir: str = DEFAULT_OUT_DIR
    """Output directory for the motions table and saved images."""

    save_imgs: bool = False
    """Save the registered images."""

    save_crop: bool = False
    """Save the cropped images and their registered counterpart."""

    save_plots: bool = False
    """Save a plot of the per-level convergence history."""

    verbose: bool = False
    """Show debug-level logging."""

    @property
    def crop_frame(self) -> Optional[CropFrame]:
        if self.crop is None:
            return None
        return CropFrame.from_string(self.crop)

    def registration_config(self) -> RegistrationConfig:
        """The engine configuration part of these parameters."""
        fields = set(RegistrationConfig.model_fields)
        return RegistrationConfig.model_validate(
            {name: getattr(self, name) for name in fields}
        )

    @classmethod
    def from_json_file(cls, json_path: str) -> "AlignmentParameters":
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters

        Returns:
            AlignmentParameters: New instance with values from JSON
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file.

        Args:
            json_path: Path where JSON file should be saved
        """
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))
        logging.debug(f"Saved alignment parameters to {json_path}")
