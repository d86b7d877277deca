"""
Module: optimization.options
----------------------------
Solver selection and convergence settings for MAP super-resolution.

Classes
-------
- `LeastSquaresSolver`:
    Which nonlinear least-squares backend to run
- `DifferentiationMode`:
    Analytical (operator supplied) or numerical (finite difference) gradients
- `SolverOptions`:
    A named tuple with solver choice, differentiation mode, channel splitting
    and the three convergence thresholds

Factory Functions
-----------------
- `make_solver_options`:
    Creates a SolverOptions instance with runtime type checking

Functions
---------
- `adjust_thresholds_adaptively`:
    Scale the thresholds up with problem size and regularization strength
- `solver_options_report`:
    Lines of the diagnostic report
- `print_solver_options`:
    Print the diagnostic report to stdout
"""

import math
from enum import Enum

from beartype import beartype
from beartype.typing import List, NamedTuple


class LeastSquaresSolver(Enum):
    CONJUGATE_GRADIENT = "conjugate gradient"
    LBFGS = "LBFGS"


class DifferentiationMode(Enum):
    ANALYTICAL = "analytical"
    NUMERICAL = "numerical"


class SolverOptions(NamedTuple):
    """
    Description
    -----------
    Settings read by the optimizer backend.

    Attributes
    ----------
    - `least_squares_solver` (LeastSquaresSolver):
        Backend used to minimize the objective.
    - `differentiation_mode` (DifferentiationMode):
        How the gradient of the objective is obtained.
    - `numerical_differentiation_step` (float):
        Finite difference step, only used in numerical mode.
    - `split_channels` (bool):
        Solve every channel as an independent sub-problem.
    - `gradient_norm_threshold` (float):
        Threshold 1, on the gradient norm.
    - `cost_decrease_threshold` (float):
        Threshold 2, on the relative decrease of the cost.
    - `parameter_variation_threshold` (float):
        Threshold 3, on the norm of the parameter update.
    - `max_iterations` (int):
        Iteration budget of the backend.
    - `lbfgs_history_size` (int):
        Number of correction pairs kept by the LBFGS backend.
    """

    least_squares_solver: LeastSquaresSolver = LeastSquaresSolver.CONJUGATE_GRADIENT
    differentiation_mode: DifferentiationMode = DifferentiationMode.ANALYTICAL
    numerical_differentiation_step: float = 1.0e-6
    split_channels: bool = False
    gradient_norm_threshold: float = 1.0e-6
    cost_decrease_threshold: float = 1.0e-6
    parameter_variation_threshold: float = 1.0e-6
    max_iterations: int = 50
    lbfgs_history_size: int = 10


@beartype
def make_solver_options(
    least_squares_solver: LeastSquaresSolver = LeastSquaresSolver.CONJUGATE_GRADIENT,
    differentiation_mode: DifferentiationMode = DifferentiationMode.ANALYTICAL,
    numerical_differentiation_step: float = 1.0e-6,
    split_channels: bool = False,
    gradient_norm_threshold: float = 1.0e-6,
    cost_decrease_threshold: float = 1.0e-6,
    parameter_variation_threshold: float = 1.0e-6,
    max_iterations: int = 50,
    lbfgs_history_size: int = 10,
) -> SolverOptions:
    """
    Description
    -----------
    Factory function for SolverOptions with range validation.

    Parameters
    ----------
    - `least_squares_solver` (LeastSquaresSolver):
        Default CONJUGATE_GRADIENT.
    - `differentiation_mode` (DifferentiationMode):
        Default ANALYTICAL.
    - `numerical_differentiation_step` (float):
        Must be positive. Default 1e-6.
    - `split_channels` (bool):
        Default False.
    - `gradient_norm_threshold` (float):
        Must be finite and non-negative. Default 1e-6.
    - `cost_decrease_threshold` (float):
        Must be finite and non-negative. Default 1e-6.
    - `parameter_variation_threshold` (float):
        Must be finite and non-negative. Default 1e-6.
    - `max_iterations` (int):
        Must be at least 1. Default 50.
    - `lbfgs_history_size` (int):
        Must be at least 1. Default 10.

    Returns
    -------
    - `options` (SolverOptions):
        Validated options

    Raises
    ------
    - ValueError:
        If any value is outside its valid range
    """
    thresholds = {
        "gradient_norm_threshold": gradient_norm_threshold,
        "cost_decrease_threshold": cost_decrease_threshold,
        "parameter_variation_threshold": parameter_variation_threshold,
    }
    for name, value in thresholds.items():
        if not math.isfinite(value) or value < 0.0:
            raise ValueError(f"{name} must be finite and non-negative, got {value}")
    if not numerical_differentiation_step > 0.0:
        raise ValueError(
            "numerical_differentiation_step must be positive, "
            f"got {numerical_differentiation_step}"
        )
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be >= 1, got {max_iterations}")
    if lbfgs_history_size < 1:
        raise ValueError(f"lbfgs_history_size must be >= 1, got {lbfgs_history_size}")
    return SolverOptions(
        least_squares_solver=least_squares_solver,
        differentiation_mode=differentiation_mode,
        numerical_differentiation_step=numerical_differentiation_step,
        split_channels=split_channels,
        gradient_norm_threshold=gradient_norm_threshold,
        cost_decrease_threshold=cost_decrease_threshold,
        parameter_variation_threshold=parameter_variation_threshold,
        max_iterations=max_iterations,
        lbfgs_history_size=lbfgs_history_size,
    )


def adjust_thresholds_adaptively(
    options: SolverOptions,
    num_parameters: int,
    regularization_parameter_sum: float,
) -> SolverOptions:
    """
    Description
    -----------
    Scale the three convergence thresholds by
    num_parameters * regularization_parameter_sum.

    The absolute magnitude of the cost and its gradient grows with the number
    of unknowns and with the total regularization weight, so the stopping
    thresholds grow with them. Thresholds are only ever scaled up: a scale
    below 1 leaves the options untouched.

    Parameters
    ----------
    - `options` (SolverOptions):
        Current options.
    - `num_parameters` (int):
        Number of unknowns of the problem.
    - `regularization_parameter_sum` (float):
        Sum of all regularization weights.

    Returns
    -------
    - `adjusted` (SolverOptions):
        Options with scaled thresholds, or `options` itself if the scale
        is below 1.
    """
    threshold_scale: float = num_parameters * regularization_parameter_sum
    if threshold_scale < 1.0:
        return options
    return options._replace(
        gradient_norm_threshold=options.gradient_norm_threshold * threshold_scale,
        cost_decrease_threshold=options.cost_decrease_threshold * threshold_scale,
        parameter_variation_threshold=(
            options.parameter_variation_threshold * threshold_scale
        ),
    )


def solver_options_report(options: SolverOptions) -> List[str]:
    """
    Lines of the diagnostic report, in fixed order: solver and
    differentiation mode, channel splitting (only if enabled), then
    thresholds 1 to 3.
    """
    solver_line: str = (
        "  Least squares solver:                "
        f"{options.least_squares_solver.value}"
    )
    if options.differentiation_mode == DifferentiationMode.NUMERICAL:
        solver_line += (
            " (numerical differentiation [step = "
            f"{options.numerical_differentiation_step}])"
        )
    else:
        solver_line += " (analytical differentiation)"
    lines: List[str] = [solver_line]
    if options.split_channels:
        lines.append("  Channel splitting enabled.")
    lines.append(
        f"  Threshold 1 (gradient norm):         {options.gradient_norm_threshold}"
    )
    lines.append(
        f"  Threshold 2 (cost decrease):         {options.cost_decrease_threshold}"
    )
    lines.append(
        "  Threshold 3 (parameter variation):   "
        f"{options.parameter_variation_threshold}"
    )
    return lines


def print_solver_options(options: SolverOptions) -> None:
    """Print the diagnostic report to stdout."""
    for line in solver_options_report(options):
        print(line)
