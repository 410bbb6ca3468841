"""Convergence plots of a registration run."""
import pathlib
from typing import Union

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

from .multires_registration import RegistrationResult


def plot_convergence(
    result: RegistrationResult, output_path: Union[str, pathlib.Path]
) -> pathlib.Path:
    """Plot the per-level primal residual and nuclear norm histories.

    Parameters
    ----------
    result : RegistrationResult
        Result of ``register_images``
    output_path : str or Path
        Where to write the figure (format deduced from the suffix)

    Returns
    -------
    Path
        The written file
    """
    output_path = pathlib.Path(output_path)
    fig, (ax_res, ax_norm) = plt.subplots(1, 2, figsize=(12, 4.5))

    for level in result.levels:
        label = f"level {level.level} ({level.status.value})"
        if level.residual_history:
            iterations = range(1, len(level.residual_history) + 1)
            ax_res.semilogy(iterations, level.residual_history, marker=".", label=label)
        ax_norm.plot(range(len(level.nuclear_norm_history)), level.nuclear_norm_history,
                     marker=".", label=label)

    ax_res.set_title("Relative primal residual ||D - L|| / ||D||")
    ax_res.set_xlabel("Iteration")
    ax_res.grid(True, which="both", alpha=0.3)
    ax_norm.set_title("Nuclear norm of the warped images")
    ax_norm.set_xlabel("Iteration")
    ax_norm.grid(True, alpha=0.3)
    if result.levels:
        ax_res.legend()
        ax_norm.legend()

    fig.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=100)
    plt.close(fig)
    return output_path
