import contextlib
import math
import pathlib
import tempfile
from typing import Generator, Sequence

import numpy as np
import skimage.filters
import skimage.io
import skimage.transform

from .parameters import AlignmentParameters
from .registration._affine import AffineMotion

PARAMETERS_FIXTURE_FILE = (
    pathlib.Path(__file__).parent.parent
    / "test_fixtures"
    / "parameters_test"
    / "parameters.json"
)


def smooth_texture(
    shape: tuple[int, int] = (128, 128), sigma: float = 4.0, seed: int = 0
) -> np.ndarray:
    """Smooth random texture in [0, 1]; gaussian-filtered uniform noise."""
    rng = np.random.default_rng(seed)
    texture = skimage.filters.gaussian(rng.random(shape), sigma=sigma)
    return (texture - texture.min()) / (texture.max() - texture.min())


def rotation_about_center(
    angle_deg: float,
    shape: tuple[int, int],
    translation: tuple[float, float] = (0.0, 0.0),
) -> AffineMotion:
    """Rotation by ``angle_deg`` around the image center followed by a translation."""
    height, width = shape
    center = np.array([(width - 1) / 2.0, (height - 1) / 2.0])
    theta = math.radians(angle_deg)
    rotation = np.array(
        [[math.cos(theta), -math.sin(theta)], [math.sin(theta), math.cos(theta)]]
    )
    matrix = np.eye(3)
    matrix[:2, :2] = rotation
    matrix[:2, 2] = center - rotation @ center + np.asarray(translation)
    return AffineMotion.from_matrix(matrix)


def make_misaligned_stack(
    warps: Sequence[AffineMotion],
    shape: tuple[int, int] = (128, 128),
    margin: int = 16,
    sigma: float = 4.0,
    seed: int = 0,
) -> list[np.ndarray]:
    """Images ``I_k(x) = R(W_k x)`` of one smooth texture ``R``.

    The texture is rendered on a canvas ``margin`` pixels larger on every
    side and cropped afterwards, so no image contains extrapolated content
    as long as the warps move points by less than ``margin``. The motion
    registering image k onto the reference texture is ``W_k.inverse()``.
    The images are warped with scikit-image, independently of the sampler
    used by the registration.
    """
    height, width = shape
    canvas = smooth_texture((height + 2 * margin, width + 2 * margin), sigma, seed)
    to_canvas = AffineMotion(np.array([0.0, 0.0, 0.0, 0.0, margin, margin]))
    images = []
    for warp in warps:
        on_canvas = to_canvas.compose(warp).compose(to_canvas.inverse())
        warped = skimage.transform.warp(
            canvas,
            skimage.transform.AffineTransform(matrix=on_canvas.matrix()),
            order=1,
            mode="edge",
            preserve_range=True,
        )
        images.append(warped[margin : margin + height, margin : margin + width])
    return images


def default_warps(shape: tuple[int, int] = (128, 128)) -> list[AffineMotion]:
    """Reference image plus three small rotations and translations."""
    return [
        AffineMotion.identity(),
        rotation_about_center(1.0, shape, (1.5, -0.8)),
        rotation_about_center(-1.5, shape, (-2.0, 1.2)),
        rotation_about_center(0.5, shape, (0.7, 2.5)),
    ]


def large_warps(shape: tuple[int, int] = (128, 128)) -> list[AffineMotion]:
    """Rotations of up to 3 degrees and translations of up to 5 px.

    Corners move by up to about 11 px on a 128x128 image, so stacks built
    from these need a margin above that.
    """
    return [
        AffineMotion.identity(),
        rotation_about_center(3.0, shape, (5.0, -4.0)),
        rotation_about_center(-3.0, shape, (-4.0, 5.0)),
        rotation_about_center(2.0, shape, (-5.0, -3.0)),
    ]


def mean_reprojection_error(
    estimated: AffineMotion, expected: AffineMotion, shape: tuple[int, int]
) -> float:
    """Mean distance (px) between the points mapped by two motions over an image grid."""
    ys, xs = np.mgrid[0 : shape[0], 0 : shape[1]]
    ex, ey = estimated.apply(xs.ravel(), ys.ravel())
    tx, ty = expected.apply(xs.ravel(), ys.ravel())
    return float(np.mean(np.hypot(ex - tx, ey - ty)))


def to_uint8(image: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(image * 255.0), 0, 255).astype(np.uint8)


@contextlib.contextmanager
def temporary_image_directory_params(
    images: Sequence[np.ndarray],
    name: str = "image_inputs",
    **overrides,
) -> Generator[AlignmentParameters, None, None]:
    """Write images as PNG files and yield parameters pointing to them.

    The fixture parameters are used as a base, ``overrides`` replace fields.
    The output directory lives in the same temporary directory.
    """
    with tempfile.TemporaryDirectory() as d:
        base_dir = pathlib.Path(d) / name
        base_dir.mkdir(parents=True)
        for i, image in enumerate(images):
            skimage.io.imsave(base_dir / f"img_{i:02d}.png", image, check_contrast=False)

        base_params = AlignmentParameters.from_json_file(str(PARAMETERS_FIXTURE_FILE))
        values = base_params.model_dump()
        values.update(
            inputs=[str(base_dir / "*.png")],
            out_dir=str(pathlib.Path(d) / "out"),
        )
        values.update(overrides)
        yield AlignmentParameters.model_validate(values)
