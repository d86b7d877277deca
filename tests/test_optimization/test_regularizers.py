"""Tests for regularizer operators and weighted bindings."""

import chex
import jax
import jax.numpy as jnp
import pytest
from absl.testing import parameterized

from mapsr.optimization.regularizers import (
    Regularizer,
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

jax.config.update("jax_enable_x64", True)


class TestRegularizers(chex.TestCase):
    """Test suite for the concrete regularizers."""

    def setUp(self) -> None:
        key = jax.random.PRNGKey(11)
        self.pixels = jax.random.uniform(key, (2, 6, 7), dtype=jnp.float64)
        self.constant = jnp.full((2, 6, 7), 0.4)

    def test_total_variation_of_constant_image(self) -> None:
        epsilon = 1.0e-6
        regularizer = make_total_variation_regularizer(epsilon)
        cost = regularizer_cost(regularizer, self.constant)
        self.assertAlmostEqual(float(cost), 2 * 6 * 7 * epsilon**0.5, places=10)

    def test_total_variation_grows_with_noise(self) -> None:
        regularizer = make_total_variation_regularizer()
        assert regularizer_cost(regularizer, self.pixels) > regularizer_cost(
            regularizer, self.constant
        )

    def test_tikhonov_of_constant_image_is_zero(self) -> None:
        regularizer = make_tikhonov_regularizer()
        self.assertAlmostEqual(float(regularizer_cost(regularizer, self.constant)), 0.0)

    def test_tikhonov_closed_form_gradient(self) -> None:
        regularizer = make_tikhonov_regularizer()
        assert regularizer.gradient_fn is not None
        expected = jax.grad(regularizer.cost_fn)(self.pixels)
        chex.assert_trees_all_close(
            regularizer_gradient(regularizer, self.pixels), expected, atol=1e-12
        )

    @parameterized.parameters(
        (make_total_variation_regularizer,),
        (make_bilateral_total_variation_regularizer,),
    )
    def test_autodiff_gradient_fallback(self, factory) -> None:
        regularizer = factory()
        assert regularizer.gradient_fn is None
        gradient = regularizer_gradient(regularizer, self.pixels)
        chex.assert_shape(gradient, self.pixels.shape)
        chex.assert_trees_all_close(
            gradient, jax.grad(regularizer.cost_fn)(self.pixels)
        )

    def test_bilateral_total_variation_prefers_smooth_images(self) -> None:
        regularizer = make_bilateral_total_variation_regularizer(
            scale_range=2, spatial_decay=0.5
        )
        assert regularizer_cost(regularizer, self.pixels) > regularizer_cost(
            regularizer, self.constant
        )

    def test_bilateral_invalid_parameters(self) -> None:
        with pytest.raises(ValueError, match="scale_range"):
            make_bilateral_total_variation_regularizer(scale_range=0)
        with pytest.raises(ValueError, match="spatial_decay"):
            make_bilateral_total_variation_regularizer(spatial_decay=1.5)

    def test_evaluation_has_no_side_effects(self) -> None:
        regularizer = make_total_variation_regularizer()
        first = regularizer_cost(regularizer, self.pixels)
        second = regularizer_cost(regularizer, self.pixels)
        assert float(first) == float(second)


class TestBindings(chex.TestCase):
    """Test suite for binding and aggregating weighted regularizers."""

    def setUp(self) -> None:
        self.tv = make_total_variation_regularizer()
        self.tikhonov = make_tikhonov_regularizer()

    def test_empty_sum(self) -> None:
        assert regularization_parameter_sum(()) == 0.0

    def test_bindings_keep_order_and_duplicates(self) -> None:
        bindings = bind_regularizer((), self.tv, 0.3)
        bindings = bind_regularizer(bindings, self.tikhonov, 1.0)
        bindings = bind_regularizer(bindings, self.tv, 0.7)
        assert [binding.weight for binding in bindings] == [0.3, 1.0, 0.7]
        assert bindings[0].regularizer is bindings[2].regularizer
        self.assertAlmostEqual(regularization_parameter_sum(bindings), 2.0)

    @parameterized.parameters((-0.1,), (float("nan"),), (float("inf"),))
    def test_invalid_weight(self, weight) -> None:
        with pytest.raises(ValueError, match="Regularization weight"):
            bind_regularizer((), self.tv, weight)

    def test_weighted_cost_and_gradient(self) -> None:
        pixels = jax.random.uniform(jax.random.PRNGKey(2), (1, 5, 5), dtype=jnp.float64)
        bindings = bind_regularizer((), self.tv, 0.25)
        bindings = bind_regularizer(bindings, self.tikhonov, 2.0)
        expected_cost = 0.25 * self.tv.cost_fn(pixels) + 2.0 * self.tikhonov.cost_fn(
            pixels
        )
        self.assertAlmostEqual(
            float(weighted_regularization_cost(bindings, pixels)),
            float(expected_cost),
            places=10,
        )
        expected_gradient = jax.grad(
            lambda p: 0.25 * self.tv.cost_fn(p) + 2.0 * self.tikhonov.cost_fn(p)
        )(pixels)
        chex.assert_trees_all_close(
            weighted_regularization_gradient(bindings, pixels),
            expected_gradient,
            atol=1e-10,
        )

    def test_custom_regularizer(self) -> None:
        energy = Regularizer(name="energy", cost_fn=lambda p: jnp.sum(p**2))
        pixels = jnp.full((1, 2, 2), 3.0)
        self.assertAlmostEqual(float(regularizer_cost(energy, pixels)), 36.0)
        chex.assert_trees_all_close(regularizer_gradient(energy, pixels), 2.0 * pixels)
