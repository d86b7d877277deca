"""Tests for the conjugate gradient and LBFGS backends."""

import chex
import jax
import jax.numpy as jnp
from absl.testing import parameterized

from mapsr.optimization.options import LeastSquaresSolver, make_solver_options
from mapsr.optimization.solvers import (
    SolverStatus,
    backend_step,
    backtracking_line_search,
    conjugate_gradient_direction,
    init_backend,
    is_converged,
    lbfgs_direction,
    run_backend,
)

jax.config.update("jax_enable_x64", True)


def _quadratic():
    diagonal = jnp.array([1.0, 2.0, 5.0, 10.0])
    target = jnp.array([1.0, -2.0, 0.5, 3.0])

    def cost_fn(x):
        return jnp.sum(diagonal * (x - target) ** 2)

    def cost_and_gradient_fn(x):
        return cost_fn(x), 2.0 * diagonal * (x - target)

    return cost_fn, cost_and_gradient_fn, target


class TestRunBackend(chex.TestCase):
    """Test suite for run_backend on a separable quadratic."""

    @parameterized.parameters(
        (LeastSquaresSolver.CONJUGATE_GRADIENT,),
        (LeastSquaresSolver.LBFGS,),
    )
    def test_quadratic_converges(self, backend) -> None:
        cost_fn, cost_and_gradient_fn, target = _quadratic()
        options = make_solver_options(least_squares_solver=backend, max_iterations=500)
        result = run_backend(cost_fn, cost_and_gradient_fn, jnp.zeros(4), options)
        assert result.status == SolverStatus.CONVERGED
        chex.assert_trees_all_close(result.parameters, target, atol=1e-5)
        assert result.final_cost < 1e-8

    def test_non_finite_start_fails(self) -> None:
        cost_fn, cost_and_gradient_fn, _ = _quadratic()
        start = jnp.array([jnp.nan, 0.0, 0.0, 0.0])
        result = run_backend(cost_fn, cost_and_gradient_fn, start, make_solver_options())
        assert result.status == SolverStatus.FAILED
        assert result.iterations == 0

    def test_objective_breaking_down_mid_run_fails(self) -> None:
        cost_fn, cost_and_gradient_fn, _ = _quadratic()

        def guarded_cost_and_gradient_fn(x):
            cost, gradient = cost_and_gradient_fn(x)
            return cost, jnp.where(x[0] > 0.5, jnp.nan, gradient)

        result = run_backend(
            cost_fn,
            guarded_cost_and_gradient_fn,
            jnp.zeros(4),
            make_solver_options(max_iterations=200),
        )
        assert result.status == SolverStatus.FAILED
        assert result.iterations > 0
        chex.assert_tree_all_finite(result.parameters)
        assert float(result.parameters[0]) <= 0.5
        self.assertAlmostEqual(
            result.final_cost, float(cost_fn(result.parameters)), places=10
        )

    def test_iteration_budget(self) -> None:
        cost_fn, cost_and_gradient_fn, _ = _quadratic()
        options = make_solver_options(max_iterations=2)
        result = run_backend(cost_fn, cost_and_gradient_fn, jnp.zeros(4), options)
        assert result.status == SolverStatus.MAX_ITERATIONS
        assert result.iterations == 2


class TestBackendPieces(chex.TestCase):
    """Test suite for the line search, directions and convergence test."""

    def test_line_search_accepts_descent(self) -> None:
        cost_fn, cost_and_gradient_fn, _ = _quadratic()
        x = jnp.zeros(4)
        cost, gradient = cost_and_gradient_fn(x)
        step, trial_cost = backtracking_line_search(
            cost_fn, x, cost, gradient, -gradient, jnp.array(1.0)
        )
        assert float(step) > 0.0
        assert float(trial_cost) < float(cost)

    def test_line_search_rejects_nan_costs(self) -> None:
        x = jnp.ones(3)
        gradient = jnp.ones(3)
        step, trial_cost = backtracking_line_search(
            lambda p: jnp.sum(p) * jnp.nan,
            x,
            jnp.array(3.0),
            gradient,
            -gradient,
            jnp.array(1.0),
        )
        assert float(step) == 0.0
        assert float(trial_cost) == 3.0

    def test_lbfgs_without_history_is_steepest_descent(self) -> None:
        gradient = jnp.array([1.0, -2.0, 3.0])
        direction = lbfgs_direction(
            gradient, jnp.zeros((5, 3)), jnp.zeros((5, 3)), jnp.zeros(5), jnp.array(0)
        )
        chex.assert_trees_all_close(direction, -gradient)

    def test_conjugate_gradient_restart(self) -> None:
        gradient = jnp.array([1.0, 2.0])
        direction = conjugate_gradient_direction(
            gradient, jnp.zeros(2), jnp.array([5.0, 5.0])
        )
        chex.assert_trees_all_close(direction, -gradient)

    def test_not_converged_before_first_iteration(self) -> None:
        _, cost_and_gradient_fn, target = _quadratic()
        options = make_solver_options()
        state = init_backend(cost_and_gradient_fn, target, options)
        assert not is_converged(state, options)

    def test_step_decreases_cost(self) -> None:
        cost_fn, cost_and_gradient_fn, _ = _quadratic()
        options = make_solver_options(least_squares_solver=LeastSquaresSolver.LBFGS)
        state = init_backend(cost_and_gradient_fn, jnp.zeros(4), options)
        new_state = backend_step(cost_fn, cost_and_gradient_fn, state, options)
        assert int(new_state.iteration) == 1
        assert float(new_state.cost) < float(state.cost)
        assert float(new_state.previous_cost) == float(state.cost)
        assert int(new_state.history_count) == 1


class TestPackageExports(chex.TestCase):
    """Test suite for the names re-exported by mapsr.optimization."""

    def test_backend_and_registry_helpers_exported(self) -> None:
        import mapsr.optimization as optimization
        from mapsr.optimization import regularizers, solvers

        for name in (
            "init_backend",
            "backend_step",
            "backtracking_line_search",
            "conjugate_gradient_direction",
            "lbfgs_direction",
        ):
            assert name in optimization.__all__
            assert getattr(optimization, name) is getattr(solvers, name)
        for name in ("bind_regularizer", "regularization_parameter_sum"):
            assert name in optimization.__all__
            assert getattr(optimization, name) is getattr(regularizers, name)
