"""
Module: optimization.solvers
----------------------------

Gradient-based backends for minimizing a scalar objective over a flat
parameter vector.

The backend only sees two callables: `cost_fn(x)` and
`cost_and_gradient_fn(x)`. It never inspects the objective itself, so the
same backends drive the joint problem and every per-channel sub-problem.

Classes
-------
- `SolverStatus`:
    Terminal state of a run: CONVERGED, MAX_ITERATIONS or FAILED
- `BackendState`:
    Iterate, cost, gradient, search direction and LBFGS history
- `BackendResult`:
    Final parameters, terminal status, final cost and iteration count

Functions
---------
- `backtracking_line_search`:
    Armijo backtracking along a descent direction
- `conjugate_gradient_direction`:
    Polak-Ribière+ nonlinear conjugate gradient direction
- `lbfgs_direction`:
    LBFGS two-loop recursion
- `init_backend`:
    Evaluate the starting point
- `backend_step`:
    One line-searched iteration of the selected backend
- `is_converged`:
    Test the three convergence thresholds
- `run_backend`:
    Iterate until converged, failed or out of iterations
"""

import logging
from enum import Enum
from typing import Callable, Tuple

import jax
import jax.lax as lax
import jax.numpy as jnp
from beartype.typing import NamedTuple
from jaxtyping import Array, Bool, Float, Int

from .options import LeastSquaresSolver, SolverOptions

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

_ARMIJO_CONSTANT: float = 1.0e-4
_BACKTRACK_FACTOR: float = 0.5
_MAX_BACKTRACKS: int = 60
_CURVATURE_EPSILON: float = 1.0e-12


class SolverStatus(Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    FAILED = "failed"


class BackendState(NamedTuple):
    """State shared by the conjugate gradient and LBFGS backends."""
    parameters: Float[Array, "n"]
    cost: Float[Array, ""]
    gradient: Float[Array, "n"]
    direction: Float[Array, "n"]
    last_update: Float[Array, "n"]
    previous_cost: Float[Array, ""]
    step_length: Float[Array, ""]
    s_history: Float[Array, "m n"]
    y_history: Float[Array, "m n"]
    rho_history: Float[Array, "m"]
    history_count: Int[Array, ""]
    iteration: Int[Array, ""]


class BackendResult(NamedTuple):
    """Outcome of `run_backend`."""
    parameters: Float[Array, "n"]
    status: SolverStatus
    final_cost: float
    iterations: int


def backtracking_line_search(
    cost_fn: Callable[[Float[Array, "n"]], Float[Array, ""]],
    parameters: Float[Array, "n"],
    cost: Float[Array, ""],
    gradient: Float[Array, "n"],
    direction: Float[Array, "n"],
    initial_step: Float[Array, ""],
) -> Tuple[Float[Array, ""], Float[Array, ""]]:
    """
    Description
    -----------
    Shrink the step along `direction` until the Armijo sufficient decrease
    condition f(x + a d) <= f(x) + c a ∇f·d holds.

    Non-finite trial costs never satisfy the condition, so the search
    backs away from regions where the objective breaks down.

    Parameters
    ----------
    - `cost_fn` (Callable[[Float[Array, "n"]], Float[Array, ""]]):
        Objective.
    - `parameters` (Float[Array, "n"]):
        Current iterate.
    - `cost` (Float[Array, ""]):
        Objective at the current iterate.
    - `gradient` (Float[Array, "n"]):
        Gradient at the current iterate.
    - `direction` (Float[Array, "n"]):
        Descent direction.
    - `initial_step` (Float[Array, ""]):
        First trial step length.

    Returns
    -------
    - `step_length` (Float[Array, ""]):
        Accepted step length, 0 if no trial was accepted.
    - `trial_cost` (Float[Array, ""]):
        Objective at the accepted point, or `cost` if none was accepted.

    Flow
    ----
    1. Evaluate the objective at the initial step
    2. Halve the step while the Armijo condition fails, at most
       _MAX_BACKTRACKS times
    3. Return a zero step if the condition never held
    """
    slope: Float[Array, ""] = jnp.dot(gradient, direction)

    def sufficient_decrease(
        step_length: Float[Array, ""],
        trial_cost: Float[Array, ""],
    ) -> Bool[Array, ""]:
        return trial_cost <= cost + _ARMIJO_CONSTANT * step_length * slope

    def keep_searching(carry: Tuple) -> Bool[Array, ""]:
        step_length, trial_cost, count = carry
        return jnp.logical_and(
            jnp.logical_not(sufficient_decrease(step_length, trial_cost)),
            count < _MAX_BACKTRACKS,
        )

    def shrink(carry: Tuple) -> Tuple:
        step_length, _, count = carry
        new_step: Float[Array, ""] = step_length * _BACKTRACK_FACTOR
        return new_step, cost_fn(parameters + new_step * direction), count + 1

    initial_carry: Tuple = (
        initial_step,
        cost_fn(parameters + initial_step * direction),
        jnp.array(0),
    )
    step_length, trial_cost, _ = lax.while_loop(keep_searching, shrink, initial_carry)
    accepted: Bool[Array, ""] = sufficient_decrease(step_length, trial_cost)
    step_out: Float[Array, ""] = jnp.where(accepted, step_length, 0.0)
    cost_out: Float[Array, ""] = jnp.where(accepted, trial_cost, cost)
    return step_out, cost_out


def conjugate_gradient_direction(
    gradient: Float[Array, "n"],
    previous_gradient: Float[Array, "n"],
    previous_direction: Float[Array, "n"],
) -> Float[Array, "n"]:
    """
    Description
    -----------
    Polak-Ribière+ direction d = -g + β d_prev with
    β = max(0, g·(g - g_prev) / g_prev·g_prev). Restarts with steepest
    descent if the result is not a descent direction.
    """
    denominator: Float[Array, ""] = jnp.dot(previous_gradient, previous_gradient)
    beta: Float[Array, ""] = jnp.where(
        denominator > 0.0,
        jnp.dot(gradient, gradient - previous_gradient) / (denominator + 1e-300),
        0.0,
    )
    beta = jnp.maximum(beta, 0.0)
    direction: Float[Array, "n"] = -gradient + beta * previous_direction
    return jnp.where(jnp.dot(direction, gradient) < 0.0, direction, -gradient)


def lbfgs_direction(
    gradient: Float[Array, "n"],
    s_history: Float[Array, "m n"],
    y_history: Float[Array, "m n"],
    rho_history: Float[Array, "m"],
    history_count: Int[Array, ""],
) -> Float[Array, "n"]:
    """
    Description
    -----------
    Two-loop recursion for the LBFGS direction -H g.

    The history is stored oldest first; only the last `history_count`
    rows are valid.

    Parameters
    ----------
    - `gradient` (Float[Array, "n"]):
        Current gradient.
    - `s_history` (Float[Array, "m n"]):
        Parameter differences.
    - `y_history` (Float[Array, "m n"]):
        Gradient differences.
    - `rho_history` (Float[Array, "m"]):
        1 / (s·y) for each pair.
    - `history_count` (Int[Array, ""]):
        Number of valid pairs.

    Returns
    -------
    - `direction` (Float[Array, "n"]):
        Quasi-Newton descent direction, or -g if it is not a descent
        direction.
    """
    history_size: int = s_history.shape[0]
    valid: Bool[Array, "m"] = jnp.arange(history_size) >= history_size - history_count

    def first_loop(
        q: Float[Array, "n"],
        pair: Tuple,
    ) -> Tuple[Float[Array, "n"], Float[Array, ""]]:
        s, y, rho, is_valid = pair
        alpha: Float[Array, ""] = jnp.where(is_valid, rho * jnp.dot(s, q), 0.0)
        return q - alpha * y, alpha

    q, alphas = lax.scan(
        first_loop,
        gradient,
        (s_history, y_history, rho_history, valid),
        reverse=True,
    )

    newest_s: Float[Array, "n"] = s_history[-1]
    newest_y: Float[Array, "n"] = y_history[-1]
    gamma: Float[Array, ""] = jnp.where(
        history_count > 0,
        jnp.dot(newest_s, newest_y) / (jnp.dot(newest_y, newest_y) + 1e-300),
        1.0,
    )

    def second_loop(
        r: Float[Array, "n"],
        pair: Tuple,
    ) -> Tuple[Float[Array, "n"], None]:
        s, y, rho, alpha, is_valid = pair
        beta: Float[Array, ""] = rho * jnp.dot(y, r)
        return jnp.where(is_valid, r + s * (alpha - beta), r), None

    r, _ = lax.scan(
        second_loop,
        gamma * q,
        (s_history, y_history, rho_history, alphas, valid),
    )
    direction: Float[Array, "n"] = -r
    return jnp.where(jnp.dot(direction, gradient) < 0.0, direction, -gradient)


def init_backend(
    cost_and_gradient_fn: Callable[
        [Float[Array, "n"]], Tuple[Float[Array, ""], Float[Array, "n"]]
    ],
    initial_parameters: Float[Array, "n"],
    options: SolverOptions,
) -> BackendState:
    """Evaluate the starting point and build an empty history."""
    initial_parameters = jnp.asarray(initial_parameters, dtype=jnp.float64)
    cost, gradient = cost_and_gradient_fn(initial_parameters)
    num_parameters: int = initial_parameters.shape[0]
    history_size: int = options.lbfgs_history_size
    return BackendState(
        parameters=initial_parameters,
        cost=cost,
        gradient=gradient,
        direction=-gradient,
        last_update=jnp.zeros(num_parameters),
        previous_cost=cost,
        step_length=jnp.array(0.0),
        s_history=jnp.zeros((history_size, num_parameters)),
        y_history=jnp.zeros((history_size, num_parameters)),
        rho_history=jnp.zeros(history_size),
        history_count=jnp.array(0),
        iteration=jnp.array(0),
    )


def backend_step(
    cost_fn: Callable[[Float[Array, "n"]], Float[Array, ""]],
    cost_and_gradient_fn: Callable[
        [Float[Array, "n"]], Tuple[Float[Array, ""], Float[Array, "n"]]
    ],
    state: BackendState,
    options: SolverOptions,
) -> BackendState:
    """
    Description
    -----------
    One iteration of the backend selected in `options`.

    Parameters
    ----------
    - `cost_fn` (Callable):
        Objective, used by the line search.
    - `cost_and_gradient_fn` (Callable):
        Objective and gradient, evaluated once at the accepted point.
    - `state` (BackendState):
        Current state.
    - `options` (SolverOptions):
        Backend selection and LBFGS history size.

    Returns
    -------
    - `new_state` (BackendState):
        State after the step.

    Flow
    ----
    1. Line search along the stored direction
    2. Evaluate cost and gradient at the new iterate
    3. Conjugate gradient: compute the Polak-Ribière+ direction
       LBFGS: push the (s, y) pair if it has positive curvature, then run
       the two-loop recursion
    4. If the line search failed, restart from steepest descent
    """
    gradient_norm: Float[Array, ""] = jnp.linalg.norm(state.gradient)
    first_step: Float[Array, ""] = 1.0 / (gradient_norm + 1e-300)
    if options.least_squares_solver == LeastSquaresSolver.LBFGS:
        initial_step: Float[Array, ""] = jnp.where(
            state.history_count > 0, 1.0, jnp.minimum(1.0, first_step)
        )
    else:
        initial_step = jnp.where(
            state.step_length > 0.0, 2.0 * state.step_length, first_step
        )

    step_length, _ = backtracking_line_search(
        cost_fn,
        state.parameters,
        state.cost,
        state.gradient,
        state.direction,
        initial_step,
    )
    update: Float[Array, "n"] = step_length * state.direction
    new_parameters: Float[Array, "n"] = state.parameters + update
    new_cost, new_gradient = cost_and_gradient_fn(new_parameters)

    s_history: Float[Array, "m n"] = state.s_history
    y_history: Float[Array, "m n"] = state.y_history
    rho_history: Float[Array, "m"] = state.rho_history
    history_count: Int[Array, ""] = state.history_count

    if options.least_squares_solver == LeastSquaresSolver.LBFGS:
        gradient_change: Float[Array, "n"] = new_gradient - state.gradient
        curvature: Float[Array, ""] = jnp.dot(update, gradient_change)
        accept_pair: Bool[Array, ""] = curvature > _CURVATURE_EPSILON
        s_history = jnp.where(
            accept_pair, jnp.roll(s_history, -1, axis=0).at[-1].set(update), s_history
        )
        y_history = jnp.where(
            accept_pair,
            jnp.roll(y_history, -1, axis=0).at[-1].set(gradient_change),
            y_history,
        )
        rho_history = jnp.where(
            accept_pair,
            jnp.roll(rho_history, -1).at[-1].set(1.0 / (curvature + 1e-300)),
            rho_history,
        )
        history_count = jnp.where(
            accept_pair,
            jnp.minimum(history_count + 1, options.lbfgs_history_size),
            history_count,
        )
        new_direction: Float[Array, "n"] = lbfgs_direction(
            new_gradient, s_history, y_history, rho_history, history_count
        )
    else:
        new_direction = conjugate_gradient_direction(
            new_gradient, state.gradient, state.direction
        )

    new_direction = jnp.where(step_length > 0.0, new_direction, -new_gradient)

    return BackendState(
        parameters=new_parameters,
        cost=new_cost,
        gradient=new_gradient,
        direction=new_direction,
        last_update=update,
        previous_cost=state.cost,
        step_length=step_length,
        s_history=s_history,
        y_history=y_history,
        rho_history=rho_history,
        history_count=history_count,
        iteration=state.iteration + 1,
    )


def is_converged(state: BackendState, options: SolverOptions) -> bool:
    """
    Description
    -----------
    True when all three thresholds hold after at least one iteration:

    1. ||∇f|| <= gradient_norm_threshold
    2. |f_prev - f| <= cost_decrease_threshold * max(|f_prev|, |f|, 1)
    3. ||Δx|| <= parameter_variation_threshold
    """
    if int(state.iteration) == 0:
        return False
    gradient_norm: float = float(jnp.linalg.norm(state.gradient))
    cost: float = float(state.cost)
    previous_cost: float = float(state.previous_cost)
    cost_scale: float = max(abs(previous_cost), abs(cost), 1.0)
    parameter_variation: float = float(jnp.linalg.norm(state.last_update))
    return (
        gradient_norm <= options.gradient_norm_threshold
        and abs(previous_cost - cost) <= options.cost_decrease_threshold * cost_scale
        and parameter_variation <= options.parameter_variation_threshold
    )


def _is_finite(state: BackendState) -> bool:
    return bool(jnp.isfinite(state.cost)) and bool(
        jnp.all(jnp.isfinite(state.gradient))
    )


def run_backend(
    cost_fn: Callable[[Float[Array, "n"]], Float[Array, ""]],
    cost_and_gradient_fn: Callable[
        [Float[Array, "n"]], Tuple[Float[Array, ""], Float[Array, "n"]]
    ],
    initial_parameters: Float[Array, "n"],
    options: SolverOptions,
    verbose: bool = False,
) -> BackendResult:
    """
    Description
    -----------
    Minimize the objective starting from `initial_parameters`.

    Parameters
    ----------
    - `cost_fn` (Callable):
        Objective.
    - `cost_and_gradient_fn` (Callable):
        Objective and gradient.
    - `initial_parameters` (Float[Array, "n"]):
        Starting point.
    - `options` (SolverOptions):
        Backend, thresholds and iteration budget. The thresholds are used
        as given; adaptive scaling is the caller's job.
    - `verbose` (bool):
        Log cost and gradient norm after every iteration. Default False.

    Returns
    -------
    - `result` (BackendResult):
        Best parameters and the terminal status. On FAILED the parameters
        are the last iterate with a finite cost and gradient.

    Flow
    ----
    1. Evaluate the starting point; FAILED if it is not finite
    2. Repeat the jitted backend step up to `max_iterations` times
    3. FAILED as soon as a step produces a non-finite cost or gradient
    4. CONVERGED as soon as all three thresholds hold
    5. Otherwise MAX_ITERATIONS with the last iterate
    """
    state: BackendState = init_backend(cost_and_gradient_fn, initial_parameters, options)
    if not _is_finite(state):
        logger.warning("Objective is not finite at the initial estimate")
        return BackendResult(
            parameters=state.parameters,
            status=SolverStatus.FAILED,
            final_cost=float(state.cost),
            iterations=0,
        )

    @jax.jit
    def update_step(current: BackendState) -> BackendState:
        return backend_step(cost_fn, cost_and_gradient_fn, current, options)

    for _ in range(options.max_iterations):
        new_state: BackendState = update_step(state)
        if not _is_finite(new_state):
            logger.warning(
                "Objective became non-finite at iteration %d", int(new_state.iteration)
            )
            return BackendResult(
                parameters=state.parameters,
                status=SolverStatus.FAILED,
                final_cost=float(state.cost),
                iterations=int(new_state.iteration),
            )
        state = new_state
        if verbose:
            logger.info(
                "Iteration %d, cost: %.6e, gradient norm: %.6e",
                int(state.iteration),
                float(state.cost),
                float(jnp.linalg.norm(state.gradient)),
            )
        if is_converged(state, options):
            return BackendResult(
                parameters=state.parameters,
                status=SolverStatus.CONVERGED,
                final_cost=float(state.cost),
                iterations=int(state.iteration),
            )

    return BackendResult(
        parameters=state.parameters,
        status=SolverStatus.MAX_ITERATIONS,
        final_cost=float(state.cost),
        iterations=int(state.iteration),
    )
