"""Tests for the multi-resolution pyramid."""
import numpy as np
import pytest

from ...errors import ConfigurationError
from .._pyramid import build_pyramid, check_pyramid_levels, halve, level_shape


def test_halve_is_mean_pooling():
    image = np.arange(16, dtype=np.float64).reshape(4, 4)
    np.testing.assert_allclose(halve(image), [[2.5, 4.5], [10.5, 12.5]])


def test_halve_drops_odd_row_and_column():
    image = np.arange(35, dtype=np.float64).reshape(5, 7)
    halved = halve(image)
    assert halved.shape == (2, 3)
    np.testing.assert_allclose(halved, halve(image[:4, :6]))


def test_build_pyramid_shapes():
    images = [np.random.default_rng(i).random((67, 130)) for i in range(3)]
    pyramid = build_pyramid(images, 4)
    assert [level.level for level in pyramid] == [0, 1, 2, 3]
    assert [level.shape for level in pyramid] == [(67, 130), (33, 65), (16, 32), (8, 16)]
    for level in pyramid:
        assert len(level.images) == 3
        assert level.shape == level_shape((67, 130), level.level)
    assert pyramid[2].scale == 0.25


def test_build_pyramid_does_not_modify_inputs():
    image = np.ones((32, 32))
    pyramid = build_pyramid([image, image], 2)
    assert pyramid[0].images[0] is not image
    np.testing.assert_array_equal(image, 1.0)


def test_check_pyramid_levels():
    check_pyramid_levels((64, 64), 4)
    with pytest.raises(ConfigurationError):
        check_pyramid_levels((64, 64), 5)
    with pytest.raises(ConfigurationError):
        check_pyramid_levels((64, 64), 0)
    with pytest.raises(ConfigurationError):
        build_pyramid([np.zeros((20, 200))] * 2, 3)
