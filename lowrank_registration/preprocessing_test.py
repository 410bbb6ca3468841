import unittest

import numpy as np

from .errors import ConfigurationError
from .parameters import CropFrame
from .preprocessing import (
    as_float_image,
    check_images,
    crop_images,
    equalize_mean,
    prepare_working_images,
)


class PreprocessingTest(unittest.TestCase):
    def test_as_float_image(self) -> None:
        np.testing.assert_allclose(as_float_image(np.array([0, 255], dtype=np.uint8)), [0.0, 1.0])
        np.testing.assert_allclose(
            as_float_image(np.array([0, 65535], dtype=np.uint16)), [0.0, 1.0]
        )
        image = np.array([0.25, 2.0])
        converted = as_float_image(image)
        np.testing.assert_array_equal(converted, image)
        self.assertIsNot(converted, image)

    def test_check_images(self) -> None:
        check_images([np.zeros((3, 4))] * 2)
        with self.assertRaises(ConfigurationError):
            check_images([])
        with self.assertRaises(ConfigurationError):
            check_images([np.zeros((3, 4)), np.zeros((4, 3))])

    def test_crop_images(self) -> None:
        image = np.arange(20).reshape(4, 5)
        (cropped,) = crop_images([image], CropFrame(1, 2, 4, 4))
        np.testing.assert_array_equal(cropped, image[2:4, 1:4])
        with self.assertRaises(ConfigurationError):
            crop_images([image], CropFrame(0, 0, 6, 4))

    def test_equalize_mean(self) -> None:
        images = [np.full((4, 4), 0.2), np.linspace(0.0, 0.4, 16).reshape(4, 4)]
        equalized = equalize_mean(images, 0.5)
        for image in equalized:
            self.assertAlmostEqual(float(image.mean()), 0.5)
        np.testing.assert_allclose(images[0], 0.2)

    def test_equalize_clips_and_skips_black_images(self) -> None:
        bright, black = equalize_mean([np.array([[0.1, 0.9]]), np.zeros((1, 2))], 0.9)
        np.testing.assert_allclose(bright, [[0.18, 1.0]])
        np.testing.assert_array_equal(black, 0.0)
        with self.assertRaises(ConfigurationError):
            equalize_mean([np.ones((2, 2))], 1.5)

    def test_prepare_working_images(self) -> None:
        images = [np.full((8, 8), 100, dtype=np.uint8), np.full((8, 8), 200, dtype=np.uint8)]
        working = prepare_working_images(images, CropFrame(2, 2, 6, 6), equalize=0.5)
        self.assertEqual([w.shape for w in working], [(4, 4), (4, 4)])
        for w in working:
            self.assertEqual(w.dtype, np.float64)
            np.testing.assert_allclose(w, 0.5)
        self.assertEqual(images[0][0, 0], 100)
