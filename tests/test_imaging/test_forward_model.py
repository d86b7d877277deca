"""Tests for the forward image formation model and its adjoint."""

import chex
import jax
import jax.numpy as jnp
import pytest
from absl.testing import parameterized

from mapsr.imaging.forward import (
    apply_image_model,
    decimate_and_hold,
    fourier_shift,
    gaussian_blur_kernel,
    get_downsampling_scale,
    image_model_gradient,
    make_image_model,
)

jax.config.update("jax_enable_x64", True)


class TestMakeImageModel(chex.TestCase):
    """Test suite for make_image_model validation."""

    def test_defaults(self) -> None:
        model = make_image_model(3)
        assert get_downsampling_scale(model) == 3
        assert model.blur_kernel is None
        assert model.motion_shifts is None

    @parameterized.parameters((0,), (-2,))
    def test_invalid_scale(self, scale) -> None:
        with pytest.raises(ValueError, match="Downsampling scale must be >= 1"):
            make_image_model(scale)

    def test_even_kernel_rejected(self) -> None:
        with pytest.raises(ValueError, match="must be odd"):
            make_image_model(2, blur_kernel=jnp.ones((4, 4)) / 16.0)

    def test_non_square_kernel_rejected(self) -> None:
        with self.assertRaises(Exception):
            make_image_model(2, blur_kernel=jnp.ones((3, 5)))

    def test_shift_shape_rejected(self) -> None:
        with self.assertRaises(Exception):
            make_image_model(2, motion_shifts=jnp.zeros((3, 3)))

    def test_non_integer_scale_rejected(self) -> None:
        with self.assertRaises(Exception):
            make_image_model(2.0)

    def test_non_finite_shifts_rejected(self) -> None:
        with pytest.raises(ValueError, match="Motion shifts must be finite"):
            make_image_model(2, motion_shifts=jnp.array([[0.0, jnp.inf]]))

    def test_model_is_a_pytree(self) -> None:
        model = make_image_model(2, blur_kernel=gaussian_blur_kernel(1.0, 1))
        leaves = jax.tree_util.tree_leaves(model)
        assert len(leaves) == 1
        rebuilt = jax.tree_util.tree_map(lambda leaf: leaf, model)
        assert rebuilt.downsampling_scale == 2


class TestOperators(chex.TestCase):
    """Test suite for the individual stages of the forward model."""

    def test_gaussian_kernel_normalized(self) -> None:
        kernel = gaussian_blur_kernel(1.5, 2)
        chex.assert_shape(kernel, (5, 5))
        self.assertAlmostEqual(float(jnp.sum(kernel)), 1.0, places=12)
        chex.assert_trees_all_close(kernel, kernel.T)

    def test_gaussian_kernel_invalid_sigma(self) -> None:
        with pytest.raises(ValueError, match="sigma must be positive"):
            gaussian_blur_kernel(0.0, 2)

    def test_decimate_and_hold(self) -> None:
        pixels = jnp.arange(32, dtype=jnp.float64).reshape(2, 4, 4)
        held = decimate_and_hold(pixels, 2)
        chex.assert_shape(held, (2, 4, 4))
        expected = jnp.repeat(jnp.repeat(pixels[:, ::2, ::2], 2, axis=1), 2, axis=2)
        chex.assert_trees_all_close(held, expected)

    def test_integer_fourier_shift_matches_roll(self) -> None:
        key = jax.random.PRNGKey(3)
        pixels = jax.random.normal(key, (2, 8, 8), dtype=jnp.float64)
        shifted = fourier_shift(pixels, jnp.array([1.0, 2.0]))
        expected = jnp.roll(pixels, shift=(1, 2), axis=(1, 2))
        chex.assert_trees_all_close(shifted, expected, atol=1e-10)

    def test_identity_model(self) -> None:
        key = jax.random.PRNGKey(4)
        pixels = jax.random.uniform(key, (3, 6, 6), dtype=jnp.float64)
        model = make_image_model(1)
        chex.assert_trees_all_close(apply_image_model(model, pixels, 0), pixels)

    @chex.variants(with_jit=True, without_jit=True)
    def test_apply_keeps_hr_shape(self) -> None:
        model = make_image_model(
            2,
            blur_kernel=gaussian_blur_kernel(1.0, 1),
            motion_shifts=jnp.array([[0.0, 0.0], [0.5, -0.25]]),
        )
        pixels = jnp.ones((3, 8, 8))
        simulated = self.variant(lambda p: apply_image_model(model, p, 1))(pixels)
        chex.assert_shape(simulated, (3, 8, 8))
        chex.assert_tree_all_finite(simulated)

    def test_gradient_is_adjoint(self) -> None:
        model = make_image_model(
            2,
            blur_kernel=gaussian_blur_kernel(0.8, 1),
            motion_shifts=jnp.array([[0.3, -0.6]]),
        )
        key_x, key_y = jax.random.split(jax.random.PRNGKey(5))
        x = jax.random.normal(key_x, (2, 8, 8), dtype=jnp.float64)
        y = jax.random.normal(key_y, (2, 8, 8), dtype=jnp.float64)
        forward_inner = jnp.sum(apply_image_model(model, x, 0) * y)
        adjoint_inner = jnp.sum(x * image_model_gradient(model, x, 0, y))
        self.assertAlmostEqual(float(forward_inner), float(adjoint_inner), places=8)
