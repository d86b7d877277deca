"""
Module: optimization.map_solver
-------------------------------
Maximum-a-posteriori objective for multi-frame super-resolution.

The objective of an HR estimate X is

    f(X) = Σ_i ||A_i(X) - Y_i||² + Σ_j w_j R_j(X)

where A_i is the image formation model for observation i, Y_i is the i-th
LR frame resampled (nearest neighbour) onto the HR grid, and (R_j, w_j)
are the bound regularizers. The estimate is handed to the backend as a
flat, channel-major parameter vector of length `get_num_data_points`.

Lifecycle
---------
`make_map_solver` (CONSTRUCTED) -> `add_regularizer` any number of times
(READY) -> `solve` (RUNNING) -> CONVERGED | MAX_ITERATIONS | FAILED.
A MapSolver is an immutable NamedTuple: `add_regularizer` returns a new
solver, and nothing changes while the backend runs.

Classes
-------
- `MapSolver`:
    Image model, observations, regularizer bindings and derived sizes
- `SolverResult`:
    HR estimate, terminal status, final cost and iteration count

Factory Functions
-----------------
- `make_map_solver`:
    Validate the LR frames and build the observations

Functions
---------
- `add_regularizer`:
    Bind a regularizer with a weight
- `get_regularization_parameter_sum`:
    Sum of all bound weights
- `get_hr_image_size`:
    (height, width) of the HR grid
- `get_hr_num_pixels`:
    Pixels per channel on the HR grid
- `get_num_data_points`:
    Number of unknowns, with an index range guard
- `estimate_to_parameters`:
    Flatten an HR image into the parameter vector
- `parameters_to_estimate`:
    Reshape a parameter vector into an HR image
- `data_fidelity_cost`:
    Σ_i ||A_i(X) - Y_i||²
- `data_fidelity_gradient`:
    2 Σ_i A_iᵀ(A_i(X) - Y_i)
- `map_cost`:
    Full objective of a parameter vector
- `map_gradient`:
    Analytical gradient of the objective
- `numerical_gradient`:
    Central finite difference gradient of any cost function
- `map_cost_and_gradient`:
    Evaluation entrypoint used by the backend
- `channel_subproblem`:
    Single-channel solver for channel splitting
- `make_initial_estimate`:
    Interpolate an LR frame onto the HR grid
- `solve`:
    Run the selected backend jointly or per channel
"""

import logging
from functools import partial
from typing import Callable, Sequence, Tuple

import jax
import jax.lax as lax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from beartype.typing import NamedTuple
from jaxtyping import Array, Float, Int, jaxtyped

from mapsr.imaging.forward import (
    ImageModel,
    apply_image_model,
    get_downsampling_scale,
    image_model_gradient,
)
from mapsr.imaging.image_types import (
    ImageData,
    InterpolationMode,
    get_image_size,
    get_num_channels,
    resize_image,
    scale_image_size,
)

from .options import (
    DifferentiationMode,
    SolverOptions,
    adjust_thresholds_adaptively,
    print_solver_options,
)
from .regularizers import (
    Regularizer,
    RegularizerBinding,
    bind_regularizer,
    regularization_parameter_sum,
    weighted_regularization_cost,
    weighted_regularization_gradient,
)
from .solvers import BackendResult, SolverStatus, run_backend

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

# Residual and gradient buffers are indexed with int32.
_MAX_NUM_DATA_POINTS: int = int(np.iinfo(np.int32).max)


class MapSolver(NamedTuple):
    """
    Description
    -----------
    MAP super-resolution problem.

    Attributes
    ----------
    - `image_model` (ImageModel):
        Forward model, referenced and never modified.
    - `observations` (Tuple[ImageData, ...]):
        LR frames resampled onto the HR grid, in input order.
    - `regularizers` (Tuple[RegularizerBinding, ...]):
        Ordered (regularizer, weight) bindings. Duplicates are allowed.
    - `num_channels` (int):
        Channel count shared by all frames.
    - `image_size` (Tuple[int, int]):
        HR (height, width).
    - `print_solver_output` (bool):
        Print the options report and log every iteration in `solve`.
    """

    image_model: ImageModel
    observations: Tuple[ImageData, ...]
    regularizers: Tuple[RegularizerBinding, ...]
    num_channels: int
    image_size: Tuple[int, int]
    print_solver_output: bool


class SolverResult(NamedTuple):
    """
    Description
    -----------
    Outcome of `solve`.

    Attributes
    ----------
    - `estimate` (ImageData):
        Final HR estimate. Valid for every status; on FAILED it is the last
        estimate with a finite objective.
    - `status` (SolverStatus):
        CONVERGED, MAX_ITERATIONS or FAILED.
    - `final_cost` (float):
        Objective at the estimate (summed over channels when split).
    - `iterations` (int):
        Backend iterations performed (summed over channels when split).
    """

    estimate: ImageData
    status: SolverStatus
    final_cost: float
    iterations: int


@jaxtyped(typechecker=beartype)
def make_map_solver(
    image_model: ImageModel,
    low_res_images: Sequence[ImageData],
    print_solver_output: bool = False,
) -> MapSolver:
    """
    Description
    -----------
    Validate the LR frames and build a MapSolver with no regularizers.

    Parameters
    ----------
    - `image_model` (ImageModel):
        Forward model. Its downsampling scale sets the HR size.
    - `low_res_images` (Sequence[ImageData]):
        Observed LR frames. Order is preserved and matches the frame index
        passed to the image model.
    - `print_solver_output` (bool):
        Verbose solving. Default False.

    Returns
    -------
    - `solver` (MapSolver):
        Solver in the CONSTRUCTED state.

    Raises
    ------
    - ValueError:
        If there are no frames, the frames disagree on channel count or
        size, or the model has fewer motion shifts than frames
    - OverflowError:
        If the problem has more unknowns than the index type can address

    Flow
    ----
    1. Require at least one frame
    2. Take the channel count and LR size from the first frame and require
       every other frame to match
    3. HR size = LR size * downsampling scale
    4. Copy every frame onto the HR grid with nearest neighbour resampling
    """
    num_observations: int = len(low_res_images)
    if num_observations == 0:
        raise ValueError("Cannot super-resolve with 0 low-res images.")

    num_channels: int = get_num_channels(low_res_images[0])
    lr_image_size: Tuple[int, int] = get_image_size(low_res_images[0])
    for index, low_res_image in enumerate(low_res_images[1:], start=1):
        if get_num_channels(low_res_image) != num_channels:
            raise ValueError(
                "Image channel counts do not match up: image "
                f"{index} has {get_num_channels(low_res_image)} channels, "
                f"expected {num_channels}."
            )
        if get_image_size(low_res_image) != lr_image_size:
            raise ValueError(
                "Image sizes do not match up: image "
                f"{index} has size {get_image_size(low_res_image)}, "
                f"expected {lr_image_size}."
            )

    if (
        image_model.motion_shifts is not None
        and image_model.motion_shifts.shape[0] < num_observations
    ):
        raise ValueError(
            f"Image model has {image_model.motion_shifts.shape[0]} motion shifts "
            f"for {num_observations} low-res images."
        )

    upsampling_scale: int = get_downsampling_scale(image_model)
    hr_image_size: Tuple[int, int] = scale_image_size(lr_image_size, upsampling_scale)
    _check_num_data_points(hr_image_size, num_channels)

    observations: Tuple[ImageData, ...] = tuple(
        resize_image(low_res_image, hr_image_size, InterpolationMode.NEAREST)
        for low_res_image in low_res_images
    )
    logger.info(
        "MAP solver: %d observations, %d channels, HR size %dx%d",
        num_observations,
        num_channels,
        hr_image_size[0],
        hr_image_size[1],
    )
    return MapSolver(
        image_model=image_model,
        observations=observations,
        regularizers=(),
        num_channels=num_channels,
        image_size=hr_image_size,
        print_solver_output=print_solver_output,
    )


def add_regularizer(
    solver: MapSolver,
    regularizer: Regularizer,
    regularization_parameter: float,
) -> MapSolver:
    """
    Return a solver with (regularizer, regularization_parameter) appended.
    The weight must be finite and non-negative.
    """
    return solver._replace(
        regularizers=bind_regularizer(
            solver.regularizers, regularizer, regularization_parameter
        )
    )


def get_regularization_parameter_sum(solver: MapSolver) -> float:
    return regularization_parameter_sum(solver.regularizers)


def get_hr_image_size(solver: MapSolver) -> Tuple[int, int]:
    return solver.image_size


def get_hr_num_pixels(solver: MapSolver) -> int:
    return solver.image_size[0] * solver.image_size[1]


def _check_num_data_points(image_size: Tuple[int, int], num_channels: int) -> int:
    num_data_points: int = image_size[0] * image_size[1] * num_channels
    if num_data_points > _MAX_NUM_DATA_POINTS:
        raise OverflowError(
            f"Number of data points ({num_data_points}) exceeds maximum size "
            f"({_MAX_NUM_DATA_POINTS})."
        )
    return num_data_points


def get_num_data_points(solver: MapSolver) -> int:
    """
    Number of unknowns, HR pixels * channels. Raises OverflowError when it
    does not fit the int32 index range.
    """
    return _check_num_data_points(solver.image_size, solver.num_channels)


def estimate_to_parameters(estimate: ImageData) -> Float[Array, "n"]:
    """Channel-major flattening: channel c occupies one contiguous block."""
    return estimate.pixels.reshape(-1)


def parameters_to_estimate(
    solver: MapSolver,
    parameters: Float[Array, "n"],
) -> ImageData:
    height, width = solver.image_size
    return ImageData(pixels=parameters.reshape(solver.num_channels, height, width))


def data_fidelity_cost(
    solver: MapSolver,
    pixels: Float[Array, "C H W"],
) -> Float[Array, ""]:
    cost: Float[Array, ""] = jnp.array(0.0)
    for frame_index, observation in enumerate(solver.observations):
        simulated: Float[Array, "C H W"] = apply_image_model(
            solver.image_model, pixels, frame_index
        )
        cost = cost + jnp.sum((simulated - observation.pixels) ** 2)
    return cost


def data_fidelity_gradient(
    solver: MapSolver,
    pixels: Float[Array, "C H W"],
) -> Float[Array, "C H W"]:
    """
    Description
    -----------
    Gradient of the data term through the model's adjoint operator,
    2 Σ_i A_iᵀ(A_i(X) - Y_i).
    """
    gradient: Float[Array, "C H W"] = jnp.zeros_like(pixels)
    for frame_index, observation in enumerate(solver.observations):
        residual: Float[Array, "C H W"] = (
            apply_image_model(solver.image_model, pixels, frame_index)
            - observation.pixels
        )
        gradient = gradient + 2.0 * image_model_gradient(
            solver.image_model, pixels, frame_index, residual
        )
    return gradient


def map_cost(
    solver: MapSolver,
    parameters: Float[Array, "n"],
) -> Float[Array, ""]:
    pixels: Float[Array, "C H W"] = parameters_to_estimate(solver, parameters).pixels
    return data_fidelity_cost(solver, pixels) + weighted_regularization_cost(
        solver.regularizers, pixels
    )


def map_gradient(
    solver: MapSolver,
    parameters: Float[Array, "n"],
) -> Float[Array, "n"]:
    pixels: Float[Array, "C H W"] = parameters_to_estimate(solver, parameters).pixels
    gradient: Float[Array, "C H W"] = data_fidelity_gradient(
        solver, pixels
    ) + weighted_regularization_gradient(solver.regularizers, pixels)
    return gradient.reshape(-1)


def numerical_gradient(
    cost_fn: Callable[[Float[Array, "n"]], Float[Array, ""]],
    parameters: Float[Array, "n"],
    step: float,
) -> Float[Array, "n"]:
    """
    Description
    -----------
    Central difference gradient, one pair of cost evaluations per
    parameter: (f(x + h e_k) - f(x - h e_k)) / 2h.

    Parameters
    ----------
    - `cost_fn` (Callable[[Float[Array, "n"]], Float[Array, ""]]):
        Scalar cost.
    - `parameters` (Float[Array, "n"]):
        Point at which to differentiate.
    - `step` (float):
        Finite difference step h.

    Returns
    -------
    - `gradient` (Float[Array, "n"]):
        Approximate gradient.
    """

    def partial_derivative(index: Int[Array, ""]) -> Float[Array, ""]:
        offset: Float[Array, "n"] = jnp.zeros_like(parameters).at[index].set(step)
        forward: Float[Array, ""] = cost_fn(parameters + offset)
        backward: Float[Array, ""] = cost_fn(parameters - offset)
        return (forward - backward) / (2.0 * step)

    return lax.map(partial_derivative, jnp.arange(parameters.shape[0]))


def map_cost_and_gradient(
    solver: MapSolver,
    parameters: Float[Array, "n"],
    options: SolverOptions,
) -> Tuple[Float[Array, ""], Float[Array, "n"]]:
    """
    Description
    -----------
    Cost and gradient of a parameter vector. The gradient is analytical
    (model adjoint plus regularizer gradient operators) or a central finite
    difference with `options.numerical_differentiation_step`.
    """
    cost: Float[Array, ""] = map_cost(solver, parameters)
    if options.differentiation_mode == DifferentiationMode.NUMERICAL:
        gradient: Float[Array, "n"] = numerical_gradient(
            partial(map_cost, solver),
            parameters,
            options.numerical_differentiation_step,
        )
    else:
        gradient = map_gradient(solver, parameters)
    return cost, gradient


def channel_subproblem(solver: MapSolver, channel: int) -> MapSolver:
    """
    Single-channel solver whose observations are slice `channel` of the
    original ones. Regularizers see one-channel images.
    """
    if not 0 <= channel < solver.num_channels:
        raise ValueError(
            f"Channel {channel} out of range for {solver.num_channels} channels"
        )
    observations: Tuple[ImageData, ...] = tuple(
        ImageData(pixels=observation.pixels[channel : channel + 1])
        for observation in solver.observations
    )
    return solver._replace(observations=observations, num_channels=1)


def make_initial_estimate(
    solver: MapSolver,
    low_res_image: ImageData,
    mode: InterpolationMode = InterpolationMode.LINEAR,
) -> ImageData:
    """Interpolate an LR frame onto the solver's HR grid."""
    if get_num_channels(low_res_image) != solver.num_channels:
        raise ValueError(
            f"Initial image has {get_num_channels(low_res_image)} channels, "
            f"expected {solver.num_channels}."
        )
    return resize_image(low_res_image, solver.image_size, mode)


def _run_subproblem(
    solver: MapSolver,
    initial_parameters: Float[Array, "n"],
    options: SolverOptions,
) -> BackendResult:
    cost_fn: Callable = partial(map_cost, solver)
    cost_and_gradient_fn: Callable = lambda parameters: map_cost_and_gradient(
        solver, parameters, options
    )
    return run_backend(
        cost_fn,
        cost_and_gradient_fn,
        initial_parameters,
        options,
        verbose=solver.print_solver_output,
    )


def _combine_status(statuses: Sequence[SolverStatus]) -> SolverStatus:
    if SolverStatus.FAILED in statuses:
        return SolverStatus.FAILED
    if SolverStatus.MAX_ITERATIONS in statuses:
        return SolverStatus.MAX_ITERATIONS
    return SolverStatus.CONVERGED


def solve(
    solver: MapSolver,
    initial_estimate: ImageData,
    options: SolverOptions,
) -> SolverResult:
    """
    Description
    -----------
    Minimize the MAP objective starting from `initial_estimate`.

    Parameters
    ----------
    - `solver` (MapSolver):
        Problem with all regularizers bound.
    - `initial_estimate` (ImageData):
        Starting HR estimate, same channels and size as the HR grid.
    - `options` (SolverOptions):
        Solver options before adaptive threshold scaling.

    Returns
    -------
    - `result` (SolverResult):
        Final estimate and terminal status.

    Raises
    ------
    - ValueError:
        If the initial estimate does not match the HR grid

    Flow
    ----
    1. Scale the thresholds by num_data_points * regularization weight sum
    2. Print the options report when the solver is verbose
    3. Without channel splitting run the backend once on all parameters
    4. With channel splitting run the backend once per channel on the
       channel's contiguous block and stack the results
    """
    if (
        get_num_channels(initial_estimate) != solver.num_channels
        or get_image_size(initial_estimate) != solver.image_size
    ):
        raise ValueError(
            f"Initial estimate has shape {initial_estimate.pixels.shape}, expected "
            f"({solver.num_channels}, {solver.image_size[0]}, {solver.image_size[1]})."
        )
    options = adjust_thresholds_adaptively(
        options,
        get_num_data_points(solver),
        get_regularization_parameter_sum(solver),
    )
    if solver.print_solver_output:
        print_solver_options(options)

    initial_pixels: Float[Array, "C H W"] = jnp.asarray(
        initial_estimate.pixels, dtype=jnp.float64
    )
    if not options.split_channels:
        result: BackendResult = _run_subproblem(
            solver, estimate_to_parameters(ImageData(pixels=initial_pixels)), options
        )
        estimate: ImageData = parameters_to_estimate(solver, result.parameters)
        final: SolverResult = SolverResult(
            estimate=estimate,
            status=result.status,
            final_cost=result.final_cost,
            iterations=result.iterations,
        )
    else:
        channel_results = []
        for channel in range(solver.num_channels):
            channel_results.append(
                _run_subproblem(
                    channel_subproblem(solver, channel),
                    initial_pixels[channel].reshape(-1),
                    options,
                )
            )
        height, width = solver.image_size
        pixels: Float[Array, "C H W"] = jnp.stack(
            [result.parameters.reshape(height, width) for result in channel_results]
        )
        final = SolverResult(
            estimate=ImageData(pixels=pixels),
            status=_combine_status([result.status for result in channel_results]),
            final_cost=sum(result.final_cost for result in channel_results),
            iterations=sum(result.iterations for result in channel_results),
        )

    if solver.print_solver_output:
        logger.info(
            "Solver finished with status %s after %d iterations, cost %.6e",
            final.status.value,
            final.iterations,
            final.final_cost,
        )
    return final
