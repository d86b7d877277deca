"""
Module: mapsr.optimization
--------------------------
MAP objective construction and the backends that minimize it.

Submodules
----------
- `options`:
    Solver selection, differentiation mode, channel splitting and
    adaptively scaled convergence thresholds
- `regularizers`:
    Regularizer operators, weighted bindings and their aggregation
- `map_solver`:
    Observation set, dimension accounting and the cost/gradient
    evaluation of the MAP objective
- `solvers`:
    Nonlinear conjugate gradient and LBFGS backends
"""

from .map_solver import (
    MapSolver,
    SolverResult,
    add_regularizer,
    channel_subproblem,
    data_fidelity_cost,
    data_fidelity_gradient,
    estimate_to_parameters,
    get_hr_image_size,
    get_hr_num_pixels,
    get_num_data_points,
    get_regularization_parameter_sum,
    make_initial_estimate,
    make_map_solver,
    map_cost,
    map_cost_and_gradient,
    map_gradient,
    numerical_gradient,
    parameters_to_estimate,
    solve,
)
from .options import (
    DifferentiationMode,
    LeastSquaresSolver,
    SolverOptions,
    adjust_thresholds_adaptively,
    make_solver_options,
    print_solver_options,
    solver_options_report,
)
from .regularizers import (
    Regularizer,
    RegularizerBinding,
    bind_regularizer,
    make_bilateral_total_variation_regularizer,
    make_tikhonov_regularizer,
    make_total_variation_regularizer,
    regularization_parameter_sum,
    regularizer_cost,
    regularizer_gradient,
    weighted_regularization_cost,
    weighted_regularization_gradient,
)
from .solvers import (
    BackendResult,
    BackendState,
    SolverStatus,
    backend_step,
    backtracking_line_search,
    conjugate_gradient_direction,
    init_backend,
    is_converged,
    lbfgs_direction,
    run_backend,
)

__all__: list[str] = [
    "BackendResult",
    "BackendState",
    "DifferentiationMode",
    "LeastSquaresSolver",
    "MapSolver",
    "Regularizer",
    "RegularizerBinding",
    "SolverOptions",
    "SolverResult",
    "SolverStatus",
    "add_regularizer",
    "adjust_thresholds_adaptively",
    "backend_step",
    "backtracking_line_search",
    "bind_regularizer",
    "channel_subproblem",
    "conjugate_gradient_direction",
    "data_fidelity_cost",
    "data_fidelity_gradient",
    "estimate_to_parameters",
    "get_hr_image_size",
    "get_hr_num_pixels",
    "get_num_data_points",
    "get_regularization_parameter_sum",
    "init_backend",
    "is_converged",
    "lbfgs_direction",
    "make_bilateral_total_variation_regularizer",
    "make_initial_estimate",
    "make_map_solver",
    "make_solver_options",
    "make_tikhonov_regularizer",
    "make_total_variation_regularizer",
    "map_cost",
    "map_cost_and_gradient",
    "map_gradient",
    "numerical_gradient",
    "parameters_to_estimate",
    "print_solver_options",
    "regularization_parameter_sum",
    "regularizer_cost",
    "regularizer_gradient",
    "run_backend",
    "solve",
    "solver_options_report",
    "weighted_regularization_cost",
    "weighted_regularization_gradient",
]
