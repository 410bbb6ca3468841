"""Nuclear-norm ADMM solver for one pyramid level.

Given the images of a level and initial motions, the solver alternates

1. Assemble: sample every image under its motion into the columns of D,
2. Shrink:   L = SVT(D + Y/mu, 1/mu), the proximal operator of the nuclear norm,
3. Warp:     one Gauss-Newton step per image moving its column of D towards
             the matching column of L - Y/mu,
4. Dual:     Y <- Y + mu (D - L), with an optional bounded growth of mu,

until both the relative primal residual and the motion updates are small, the
iteration cap is reached, or the host asks to cancel. When mu is kept fixed,
a motion update is shortened (or dropped) so that the primal residual never
increases, and the level stops once no update can satisfy this.

With ``sparse_ratio_threshold`` set, a level whose high-gradient pixels are
few enough is solved on those pixels only.

With ``sparse_weight`` set, an L1-penalized error term E is added to the
model (D + E = L), which lets the low-rank target ignore small regions that
do not fit, such as specular highlights or shadows.
"""
import enum
import logging
import math
from dataclasses import dataclass, field
from multiprocessing.pool import ThreadPool
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from ..errors import NumericalError
from ..parameters import RegistrationConfig
from ._affine import AffineMotion
from ._pyramid import PyramidLevel
from ._sampler import Sampler, SampleResult, pixel_grid
from ._typing_utils import BoolArray, CancelCallback, FloatArray

logger = logging.getLogger(__name__)

# Fraction of the smallest image side ignored on every border by the warp update.
BORDER_MARGIN_RATIO = 0.04

# Levenberg-Marquardt damping schedule for ill-conditioned or rejected steps.
INITIAL_DAMPING = 1e-4
DAMPING_GROWTH = 10.0
MAX_DAMPING_RETRIES = 6

# Condition number limit of the Jacobi-scaled normal equations.
MAX_CONDITION_NUMBER = 1e10

# Fractions of the motion update tried, longest first, when mu is fixed.
STEP_FRACTIONS = (1.0, 0.5, 0.25, 0.0)


class SolverStatus(enum.Enum):
    INIT = "init"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"
    ILL_CONDITIONED = "ill_conditioned"
    CANCELLED = "cancelled"


@dataclass
class ConvergenceState:
    mu: float
    iteration: int = 0
    primal_residual: float = math.inf
    parameter_update: float = math.inf


@dataclass
class LevelResult:
    """Outcome of the solve of one pyramid level."""

    level: int
    status: SolverStatus
    motions: List[AffineMotion]
    """Best motions observed during the solve (lowest nuclear norm of D)."""
    iterations: int
    primal_residual: float
    parameter_update: float
    mu: float
    ill_conditioned: List[int] = field(default_factory=list)
    """Indices of images frozen because their normal equations stayed singular."""
    residual_history: List[float] = field(default_factory=list)
    parameter_update_history: List[float] = field(default_factory=list)
    nuclear_norm_history: List[float] = field(default_factory=list)
    """Nuclear norm of D over the interior pixels, starting before the first iteration."""
    best_iteration: int = 0
    sampled_pixels: int = 0
    """Number of pixels (rows of D) the level was solved on."""

    @property
    def converged(self) -> bool:
        return self.status == SolverStatus.CONVERGED


@dataclass
class _ImageUpdate:
    motion: AffineMotion
    singular: bool = False


def shrink(values: np.ndarray, threshold: float) -> FloatArray:
    """Soft thresholding: move values toward zero by ``threshold``, flooring at zero."""
    threshold = abs(threshold)
    return np.sign(values) * np.maximum(np.abs(values) - threshold, 0.0)


def _svd(matrix: np.ndarray) -> Tuple[FloatArray, FloatArray, FloatArray]:
    try:
        return scipy.linalg.svd(matrix, full_matrices=False, lapack_driver="gesdd")
    except LinAlgError:
        logger.debug("gesdd did not converge, retrying the SVD with gesvd")
    try:
        return scipy.linalg.svd(matrix, full_matrices=False, lapack_driver="gesvd")
    except (LinAlgError, ValueError) as e:
        raise NumericalError(f"Singular value decomposition did not converge: {e}") from e


def singular_value_threshold(
    matrix: np.ndarray, threshold: float
) -> Tuple[FloatArray, FloatArray]:
    """Proximal operator of ``threshold * ||.||_*``.

    Returns:
        The reconstructed low-rank matrix and its (shrunk) singular values
    """
    u, s, vt = _svd(matrix)
    s_shrunk = shrink(s, threshold)
    return (u * s_shrunk) @ vt, s_shrunk


def nuclear_norm(matrix: np.ndarray) -> float:
    try:
        return float(np.sum(scipy.linalg.svdvals(matrix)))
    except (LinAlgError, ValueError) as e:
        raise NumericalError(f"Singular value decomposition did not converge: {e}") from e


def interior_mask(height: int, width: int) -> BoolArray:
    """Flattened mask of pixels used by the warp update (borders excluded)."""
    border = max(1, int(BORDER_MARGIN_RATIO * min(height, width)))
    mask = np.zeros((height, width), dtype=bool)
    mask[border : height - border, border : width - border] = True
    return mask.ravel()


def select_pixels(images: Sequence[np.ndarray], threshold: float) -> BoolArray:
    """Flattened mask of pixels whose gradient magnitude exceeds ``threshold`` in any image."""
    magnitude = np.zeros(np.shape(images[0]))
    for image in images:
        grad_y, grad_x = np.gradient(np.asarray(image, dtype=np.float64))
        np.maximum(magnitude, np.abs(grad_x) + np.abs(grad_y), out=magnitude)
    return (magnitude > threshold).ravel()


def _relative_norm(primal: np.ndarray, warped: np.ndarray) -> float:
    return float(np.linalg.norm(primal) / max(np.linalg.norm(warped), np.finfo(float).tiny))


def _interpolate_motions(
    current: Sequence[AffineMotion], proposed: Sequence[AffineMotion], fraction: float
) -> Optional[List[AffineMotion]]:
    """Motions a ``fraction`` of the way from ``current`` to ``proposed``, None if one is singular."""
    if fraction == 1.0:
        return list(proposed)
    if fraction == 0.0:
        return list(current)
    motions = [
        AffineMotion(old.params + fraction * (new.params - old.params))
        for old, new in zip(current, proposed)
    ]
    if not all(m.is_invertible() for m in motions):
        return None
    return motions


def normalize_to_reference(motions: Sequence[AffineMotion]) -> List[AffineMotion]:
    """Re-express all motions so that image 0 defines the reference frame.

    ``motion_i <- motion_i o motion_0^-1`` warps every image by the same
    transform in the reference frame, so alignment between images is
    unchanged while the common drift is removed.
    """
    reference_inverse = motions[0].inverse()
    return [AffineMotion.identity()] + [m.compose(reference_inverse) for m in motions[1:]]


def _solve_normal_equations(
    hessian: np.ndarray, gradient: np.ndarray, damping: float
) -> Optional[FloatArray]:
    """Solve (H + damping * diag(H)) step = gradient.

    The system is Jacobi-scaled first so that the translation and linear
    parameters, whose jacobians differ by the image size, are comparable.
    Returns None when the scaled system is singular or ill-conditioned.
    """
    diag = np.diag(hessian)
    if not np.all(np.isfinite(hessian)) or np.any(diag <= 0.0):
        return None
    scale = np.sqrt(diag)
    scaled = hessian / np.outer(scale, scale) + damping * np.eye(len(diag))
    singular_values = np.linalg.svd(scaled, compute_uv=False)
    if singular_values[-1] <= singular_values[0] / MAX_CONDITION_NUMBER:
        return None
    try:
        factor = cho_factor(scaled)
    except LinAlgError:
        return None
    return cho_solve(factor, gradient / scale) / scale


class ADMMSolver:
    """Solves one pyramid level; holds no state between calls to ``solve``."""

    def __init__(
        self,
        config: RegistrationConfig,
        cancel_requested: Optional[CancelCallback] = None,
    ):
        self.config = config
        self.cancel_requested = cancel_requested

    def _assemble(
        self,
        samplers: Sequence[Sampler],
        motions: Sequence[AffineMotion],
        xs: FloatArray,
        ys: FloatArray,
    ) -> Tuple[FloatArray, List[SampleResult]]:
        samples = [s.sample(*m.apply(xs, ys)) for s, m in zip(samplers, motions)]
        warped = np.stack([s.values for s in samples], axis=1)
        if not np.all(np.isfinite(warped)):
            raise NumericalError("Non-finite values in the warped image matrix")
        return warped, samples

    def _update_image(
        self,
        sampler: Sampler,
        sample: SampleResult,
        motion: AffineMotion,
        target: FloatArray,
        xs: FloatArray,
        ys: FloatArray,
        interior: BoolArray,
    ) -> _ImageUpdate:
        """One damped forward-compositional Gauss-Newton step for one image."""
        # Gradient of the warped image in the reference frame: A^T grad(I).
        linear = motion.linear()
        gx = linear[0, 0] * sample.grad_x + linear[1, 0] * sample.grad_y
        gy = linear[0, 1] * sample.grad_x + linear[1, 1] * sample.grad_y

        mask = interior & sample.valid
        residual = target - sample.values
        jac = np.stack([xs * gx, xs * gy, ys * gx, ys * gy, gx, gy], axis=1)[mask]
        res = residual[mask]
        hessian = jac.T @ jac
        descent = jac.T @ res

        singular_attempts = 0
        for attempt in range(MAX_DAMPING_RETRIES + 1):
            damping = 0.0 if attempt == 0 else INITIAL_DAMPING * DAMPING_GROWTH ** (attempt - 1)
            step = _solve_normal_equations(hessian, descent, damping)
            if step is None:
                singular_attempts += 1
                continue
            candidate = motion.compose(AffineMotion(step))
            if not candidate.is_invertible():
                continue
            moved = sampler.sample(*candidate.apply(xs, ys))
            common = mask & moved.valid
            old_cost = np.sum(residual[common] ** 2)
            new_cost = np.sum((target - moved.values)[common] ** 2)
            if new_cost <= old_cost:
                return _ImageUpdate(candidate)

        # No acceptable step: keep the current motion.
        return _ImageUpdate(motion, singular=singular_attempts == MAX_DAMPING_RETRIES + 1)

    def _update_motions(
        self,
        samplers: Sequence[Sampler],
        samples: Sequence[SampleResult],
        motions: Sequence[AffineMotion],
        target: FloatArray,
        frozen: set,
        xs: FloatArray,
        ys: FloatArray,
        interior: BoolArray,
    ) -> List[_ImageUpdate]:
        def run(i: int) -> _ImageUpdate:
            if i in frozen:
                return _ImageUpdate(motions[i])
            return self._update_image(
                samplers[i], samples[i], motions[i], target[:, i], xs, ys, interior
            )

        # Columns are independent given L and Y: fan out, each task owning
        # one slot of the result list.
        indices = range(len(motions))
        workers = min(self.config.workers, len(motions))
        if workers > 1:
            with ThreadPool(processes=workers) as pool:
                return pool.map(run, indices)
        return [run(i) for i in indices]

    def _sparse_pixels(self, level: PyramidLevel, interior: BoolArray) -> Optional[BoolArray]:
        """Pixels to solve the level on, or None to use every pixel."""
        ratio_threshold = self.config.sparse_ratio_threshold
        if ratio_threshold is None:
            return None
        selected = select_pixels(level.images, self.config.sparse_gradient_threshold) & interior
        ratio = selected.sum() / max(interior.sum(), 1)
        if ratio > ratio_threshold or not selected.any():
            logger.info(f"Level {level.level}: dense resolution ({ratio:.1%} of pixels selected)")
            return None
        logger.info(
            f"Level {level.level}: sparse resolution on {selected.sum()} pixels ({ratio:.1%})"
        )
        return selected

    def solve(
        self, level: PyramidLevel, initial_motions: Sequence[AffineMotion]
    ) -> LevelResult:
        """Run the ADMM iterations on one pyramid level.

        Args:
            level: The images of the level
            initial_motions: One motion per image, expressed at this level's scale

        Returns:
            LevelResult holding the best motions observed and diagnostics

        Raises:
            NumericalError: If the SVD fails or the data becomes non-finite.
                The best motions observed so far are attached to the error.
        """
        images = level.images
        if len(initial_motions) != len(images):
            raise ValueError(
                f"Got {len(initial_motions)} motions for {len(images)} images"
            )
        config = self.config
        height, width = level.shape
        xs, ys = pixel_grid(height, width)
        interior = interior_mask(height, width)
        samplers = [Sampler(im, config.out_of_bounds) for im in images]
        pixels = self._sparse_pixels(level, interior)
        if pixels is not None:
            xs, ys, interior = xs[pixels], ys[pixels], interior[pixels]
        pixel_count = len(xs)

        status = SolverStatus.INIT
        state = ConvergenceState(mu=config.mu)
        motions = list(initial_motions)
        best_motions = list(motions)
        best_iteration = 0
        frozen: set = set()
        residual_history: List[float] = []
        update_history: List[float] = []

        try:
            warped, samples = self._assemble(samplers, motions, xs, ys)
            best_norm = nuclear_norm(warped[interior])
            norm_history = [best_norm]
            dual = np.zeros_like(warped)
            errors = np.zeros_like(warped)
            status = SolverStatus.ITERATING

            while status == SolverStatus.ITERATING:
                if self.cancel_requested is not None and self.cancel_requested():
                    logger.info(f"Level {level.level}: cancelled after {state.iteration} iterations")
                    status = SolverStatus.CANCELLED
                    break
                if state.iteration >= config.max_iterations:
                    status = SolverStatus.MAX_ITER_REACHED
                    break
                mu = state.mu

                # Shrink: low-rank target.
                low_rank, singular_values = singular_value_threshold(
                    warped + errors + dual / mu, 1.0 / mu
                )
                new_errors = errors
                if config.sparse_weight is not None:
                    l1_threshold = config.sparse_weight / (math.sqrt(pixel_count) * mu)
                    new_errors = shrink(low_rank - warped - dual / mu, l1_threshold)

                # Warp update.
                target = low_rank - new_errors - dual / mu
                updates = self._update_motions(
                    samplers, samples, motions, target, frozen, xs, ys, interior
                )
                for i, update in enumerate(updates):
                    if update.singular and i not in frozen:
                        logger.warning(
                            f"Level {level.level}: image {i} has singular normal equations, "
                            "freezing its motion for this level"
                        )
                        frozen.add(i)
                proposed = normalize_to_reference([u.motion for u in updates])

                # With mu fixed the primal residual must not increase: take
                # the longest fraction of the motion update that satisfies it.
                monotone = config.mu_growth_factor == 1.0 and state.iteration > 0
                accepted = None
                for fraction in STEP_FRACTIONS if monotone else (1.0,):
                    candidate = _interpolate_motions(motions, proposed, fraction)
                    if candidate is None:
                        continue
                    if fraction == 0.0:
                        candidate_warped, candidate_samples = warped, samples
                    else:
                        candidate_warped, candidate_samples = self._assemble(
                            samplers, candidate, xs, ys
                        )
                    primal = candidate_warped + new_errors - low_rank
                    residual = _relative_norm(primal, candidate_warped)
                    if not monotone or residual <= state.primal_residual:
                        accepted = (candidate, candidate_warped, candidate_samples, primal, residual)
                        break
                if accepted is None:
                    # Nothing changed, so every further iteration would be rejected too.
                    logger.debug(
                        f"Level {level.level}: primal residual cannot decrease further "
                        f"with mu {mu:.3g}, stopping after {state.iteration} iterations"
                    )
                    state.parameter_update = 0.0
                    if state.primal_residual < config.primal_tolerance:
                        status = SolverStatus.CONVERGED
                    else:
                        status = SolverStatus.MAX_ITER_REACHED
                    break
                new_motions, warped, samples, primal, state.primal_residual = accepted
                state.parameter_update = max(
                    float(np.linalg.norm(new.params - old.params))
                    for new, old in zip(new_motions, motions)
                )
                motions = new_motions
                errors = new_errors

                # Dual ascent on the re-assembled warped images.
                dual = dual + mu * primal
                state.iteration += 1
                state.mu = min(mu * config.mu_growth_factor, config.mu_max)
                residual_history.append(state.primal_residual)
                update_history.append(state.parameter_update)

                current_norm = nuclear_norm(warped[interior])
                norm_history.append(current_norm)
                if current_norm < best_norm:
                    best_norm = current_norm
                    best_motions = list(motions)
                    best_iteration = state.iteration

                logger.debug(
                    f"Level {level.level} iteration {state.iteration}: "
                    f"nuclear norm {singular_values.sum():.6g}, "
                    f"primal residual {state.primal_residual:.3e}, "
                    f"motion update {state.parameter_update:.3e}, mu {mu:.3g}"
                )

                if (
                    state.primal_residual < config.primal_tolerance
                    and state.parameter_update < config.parameter_tolerance
                ):
                    status = SolverStatus.CONVERGED
        except NumericalError as e:
            raise NumericalError(str(e), best_motions, state.iteration) from e

        if frozen and status != SolverStatus.CANCELLED:
            status = SolverStatus.ILL_CONDITIONED

        return LevelResult(
            level=level.level,
            status=status,
            motions=best_motions,
            iterations=state.iteration,
            primal_residual=state.primal_residual,
            parameter_update=state.parameter_update,
            mu=state.mu,
            ill_conditioned=sorted(frozen),
            residual_history=residual_history,
            parameter_update_history=update_history,
            nuclear_norm_history=norm_history,
            best_iteration=best_iteration,
            sampled_pixels=len(xs),
        )
