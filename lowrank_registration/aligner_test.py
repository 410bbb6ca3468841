import contextlib
import io
import json
import pathlib
import unittest
import warnings

import numpy as np
import pandas as pd
import skimage.io

from .aligner import Aligner, ProgressCallbacks, format_motions
from .aligner_cli import main
from .errors import ConfigurationError, ConvergenceWarning
from .parameters import AlignmentParameters
from .testutil import (
    default_warps,
    make_misaligned_stack,
    temporary_image_directory_params,
    to_uint8,
)


def misaligned_png_stack() -> list[np.ndarray]:
    return [to_uint8(im) for im in make_misaligned_stack(default_warps())]


class AlignerTest(unittest.TestCase):
    def test_writes_all_outputs(self) -> None:
        with temporary_image_directory_params(
            misaligned_png_stack(),
            levels=2,
            max_iterations=10,
            save_imgs=True,
            save_crop=True,
            save_plots=True,
        ) as params:
            finished = []
            callbacks = ProgressCallbacks.no_op()
            callbacks.finished = finished.append
            aligner = Aligner(params, callbacks)
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", ConvergenceWarning)
                result = aligner.run()

            self.assertEqual(finished, [result])
            out = pathlib.Path(params.out_dir)

            motions = pd.read_csv(out / "motions.csv")
            self.assertEqual(list(motions.columns), ["image", "a", "b", "c", "d", "tx", "ty"])
            self.assertEqual(len(motions), 4)
            np.testing.assert_allclose(
                motions[["a", "b", "c", "d", "tx", "ty"]].to_numpy(),
                result.motion_vectors(),
                rtol=1e-9,
                atol=1e-12,
            )

            for i in range(4):
                registered = skimage.io.imread(out / f"{i:02d}.png")
                self.assertEqual(registered.shape, (128, 128))
                self.assertEqual(registered.dtype, np.uint8)
                cropped = skimage.io.imread(out / "cropped" / f"{i:02d}.png")
                self.assertEqual(cropped.shape, (112, 112))
                self.assertTrue((out / "cropped_aligned" / f"{i:02d}.png").exists())

            self.assertTrue((out / "convergence.png").exists())
            saved_params = AlignmentParameters.from_json_file(str(out / "parameters.json"))
            self.assertEqual(saved_params, params)

    def test_only_motions_by_default(self) -> None:
        with temporary_image_directory_params(
            misaligned_png_stack()[:2], levels=1, max_iterations=2
        ) as params:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", ConvergenceWarning)
                Aligner(params).run()
            written = sorted(p.name for p in pathlib.Path(params.out_dir).iterdir())
            self.assertEqual(written, ["motions.csv", "parameters.json"])

    def test_missing_inputs(self) -> None:
        params = AlignmentParameters(inputs=["/nonexistent/dir/*.png"])
        with self.assertRaises(ConfigurationError):
            Aligner(params).load_images()

    def test_format_motions(self) -> None:
        with temporary_image_directory_params(
            misaligned_png_stack()[:3], levels=1, max_iterations=2
        ) as params:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", ConvergenceWarning)
                result = Aligner(params).run()
        lines = format_motions(result).splitlines()
        self.assertEqual(len(lines), 3)
        for line, motion in zip(lines, result.motions):
            values = [float(v) for v in line.split(", ")]
            np.testing.assert_allclose(values, motion.params)


class AlignerCliTest(unittest.TestCase):
    def test_prints_motions(self) -> None:
        with temporary_image_directory_params(misaligned_png_stack()[:2]) as params:
            stdout = io.StringIO()
            with contextlib.redirect_stdout(stdout), warnings.catch_warnings():
                warnings.simplefilter("ignore", ConvergenceWarning)
                main(
                    [
                        "--inputs",
                        json.dumps(params.inputs),
                        "--out_dir",
                        params.out_dir,
                        "--levels",
                        "2",
                        "--max_iterations",
                        "3",
                    ]
                )
            lines = stdout.getvalue().strip().splitlines()
            self.assertEqual(len(lines), 2)
            self.assertEqual([float(v) for v in lines[0].split(", ")], [0.0] * 6)
            self.assertTrue((pathlib.Path(params.out_dir) / "motions.csv").exists())
