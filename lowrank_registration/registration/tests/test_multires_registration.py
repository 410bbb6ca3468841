"""End-to-end tests of the coarse-to-fine registration."""
import warnings

import numpy as np
import pytest

from ...errors import ConfigurationError, ConvergenceWarning
from ...parameters import CropFrame, OutOfBoundsPolicy, RegistrationConfig
from ...testutil import (
    default_warps,
    large_warps,
    make_misaligned_stack,
    mean_reprojection_error,
    smooth_texture,
)
from .._admm_solver import SolverStatus
from .._affine import AffineMotion
from ..multires_registration import MOTION_COLUMNS, register_images

SHAPE = (128, 128)


def result_failed(result):
    return result.failed or result.cancelled


@pytest.fixture(scope="module")
def warps():
    return default_warps(SHAPE)


@pytest.fixture(scope="module")
def misaligned(warps):
    return make_misaligned_stack(warps, shape=SHAPE)


@pytest.fixture(scope="module")
def recovery_result(misaligned):
    config = RegistrationConfig(levels=3, out_of_bounds=OutOfBoundsPolicy.invalid)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        return register_images(misaligned, config)


def test_identical_images():
    texture = smooth_texture(SHAPE, seed=5)
    with warnings.catch_warnings():
        warnings.simplefilter("error", ConvergenceWarning)
        result = register_images([texture] * 3, RegistrationConfig(levels=3))
    assert not result.failed
    assert not result.warnings
    assert [level.level for level in result.levels] == [2, 1, 0]
    assert all(level.status == SolverStatus.CONVERGED for level in result.levels)
    np.testing.assert_allclose(result.motion_vectors(), 0.0, atol=1e-8)


def test_recovers_synthetic_warps(recovery_result, warps):
    assert not result_failed(recovery_result)
    assert recovery_result.motions[0].allclose(AffineMotion.identity(), atol=1e-12)
    for estimated, warp in zip(recovery_result.motions, warps):
        assert mean_reprojection_error(estimated, warp.inverse(), SHAPE) < 0.5


def test_coarse_motions_agree_with_finest(recovery_result):
    levels = {level.level: level for level in recovery_result.levels}
    half_resolution = [m.scale_translation(2.0) for m in levels[1].motions]
    for coarse, fine in zip(half_resolution, recovery_result.crop_motions):
        assert mean_reprojection_error(coarse, fine, SHAPE) < 1.0


def test_coarse_to_fine_lowers_finest_residual(misaligned):
    budget = dict(max_iterations=10, out_of_bounds=OutOfBoundsPolicy.invalid)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        multi = register_images(misaligned, RegistrationConfig(levels=3, **budget))
        single = register_images(misaligned, RegistrationConfig(levels=1, **budget))
    assert multi.levels[-1].level == single.levels[-1].level == 0
    assert multi.levels[-1].primal_residual <= single.levels[-1].primal_residual


def test_recovers_large_warps():
    warps = large_warps(SHAPE)
    images = make_misaligned_stack(warps, shape=SHAPE, margin=24)
    config = RegistrationConfig(levels=3, out_of_bounds=OutOfBoundsPolicy.invalid)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        result = register_images(images, config)
    assert not result_failed(result)
    for estimated, warp in zip(result.motions, warps):
        assert mean_reprojection_error(estimated, warp.inverse(), SHAPE) < 0.5


def test_recovers_with_sparse_resolution(misaligned, warps):
    grad_y, grad_x = np.gradient(misaligned[0])
    config = RegistrationConfig(
        levels=3,
        out_of_bounds=OutOfBoundsPolicy.invalid,
        sparse_ratio_threshold=1.0,
        sparse_gradient_threshold=float(np.median(np.abs(grad_x) + np.abs(grad_y))),
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        result = register_images(misaligned, config)
    assert not result_failed(result)
    assert result.levels[-1].sampled_pixels < SHAPE[0] * SHAPE[1]
    for estimated, warp in zip(result.motions, warps):
        assert mean_reprojection_error(estimated, warp.inverse(), SHAPE) < 0.5


def test_recovers_with_crop(misaligned, warps):
    crop = CropFrame(8, 8, 120, 120)
    config = RegistrationConfig(levels=3, out_of_bounds=OutOfBoundsPolicy.invalid)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        result = register_images(misaligned, config, crop=crop)
    assert not result_failed(result)
    for estimated, warp in zip(result.motions, warps):
        assert mean_reprojection_error(estimated, warp.inverse(), SHAPE) < 0.5
    for full, cropped in zip(result.motions, result.crop_motions):
        assert full.allclose(cropped.conjugate_by_translation(crop.left, crop.top))


def test_idempotent_and_inputs_untouched(misaligned):
    before = [im.copy() for im in misaligned]
    config = RegistrationConfig(levels=2, max_iterations=8)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        first = register_images(misaligned, config)
        second = register_images(misaligned, config)
    np.testing.assert_array_equal(first.motion_vectors(), second.motion_vectors())
    for original, image in zip(before, misaligned):
        np.testing.assert_array_equal(original, image)


def test_iteration_cap_warns(misaligned):
    with pytest.warns(ConvergenceWarning):
        result = register_images(misaligned, RegistrationConfig(levels=1, max_iterations=1))
    assert result.levels[0].status == SolverStatus.MAX_ITER_REACHED
    assert result.levels[0].iterations == 1
    assert len(result.warnings) == 1


def test_only_finest_iteration_cap_warns(misaligned):
    with pytest.warns(ConvergenceWarning) as record:
        result = register_images(misaligned, RegistrationConfig(levels=2, max_iterations=1))
    assert [level.status for level in result.levels] == [SolverStatus.MAX_ITER_REACHED] * 2
    assert result.warnings == ["Level 0 did not converge in 1 iterations"]
    assert len([w for w in record if issubclass(w.category, ConvergenceWarning)]) == 1


def test_cancellation(misaligned):
    with pytest.warns(ConvergenceWarning):
        result = register_images(misaligned, RegistrationConfig(levels=3), cancel_requested=lambda: True)
    assert result.cancelled
    assert len(result.levels) == 1
    np.testing.assert_allclose(result.motion_vectors(), 0.0)


def test_numerical_failure_returns_last_motions(misaligned):
    images = [im.copy() for im in misaligned]
    images[2][40, 40] = np.nan
    with pytest.warns(ConvergenceWarning):
        result = register_images(images, RegistrationConfig(levels=2))
    assert result.failed
    assert len(result.motions) == 4
    np.testing.assert_allclose(result.motion_vectors(), 0.0)


def test_flat_images_warn():
    flat = np.full((64, 64), 0.25)
    with pytest.warns(ConvergenceWarning):
        result = register_images([flat, flat], RegistrationConfig(levels=2))
    assert all(level.status == SolverStatus.ILL_CONDITIONED for level in result.levels)
    np.testing.assert_allclose(result.motion_vectors(), 0.0)


def test_integer_images_are_accepted(misaligned):
    images = [np.rint(im * 65535).astype(np.uint16) for im in misaligned]
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        result = register_images(images, RegistrationConfig(levels=2, max_iterations=3))
    assert result.motion_vectors().shape == (4, 6)
    assert images[0].dtype == np.uint16


def test_dataframe(recovery_result):
    df = recovery_result.to_dataframe()
    assert list(df.columns) == ["image"] + MOTION_COLUMNS
    assert len(df) == 4
    np.testing.assert_allclose(df[MOTION_COLUMNS].to_numpy(), recovery_result.motion_vectors())


@pytest.mark.parametrize(
    "images, config, crop",
    [
        ([np.zeros((64, 64))], RegistrationConfig(), None),
        ([np.zeros((64, 64)), np.zeros((64, 65))], RegistrationConfig(), None),
        ([np.zeros((64, 64, 3))] * 2, RegistrationConfig(), None),
        ([np.zeros((64, 64))] * 2, RegistrationConfig(), CropFrame(0, 0, 65, 64)),
        ([np.zeros((64, 64))] * 2, RegistrationConfig(), CropFrame(10, 10, 10, 20)),
        ([np.zeros((64, 64))] * 2, RegistrationConfig(levels=5), None),
        ([np.zeros((64, 64))] * 2, RegistrationConfig(levels=0), None),
    ],
)
def test_rejects_invalid_inputs(images, config, crop):
    with pytest.raises(ConfigurationError):
        register_images(images, config, crop=crop)
