"""Type aliases shared by the registration engine."""
from typing import Callable

import numpy as np
import numpy.typing as npt

# Images, warped-image matrices and motion parameters are all float64.
FloatArray = npt.NDArray[np.float64]
BoolArray = npt.NDArray[np.bool_]

# Polled once per solver iteration; returning True stops the solve.
CancelCallback = Callable[[], bool]
