"""Tests for image containers and explicit-mode resampling."""

import chex
import jax
import jax.numpy as jnp
import pytest
from absl.testing import parameterized

from mapsr.imaging.image_types import (
    ImageData,
    InterpolationMode,
    get_image_size,
    get_num_channels,
    get_num_pixels,
    make_image_data,
    resize_image,
    scale_image_size,
)

jax.config.update("jax_enable_x64", True)


class TestMakeImageData(chex.TestCase):
    """Test suite for make_image_data and the size queries."""

    def test_two_dimensional_input_gets_one_channel(self) -> None:
        image = make_image_data(jnp.ones((5, 7)))
        chex.assert_shape(image.pixels, (1, 5, 7))
        assert image.pixels.dtype == jnp.float64
        assert get_num_channels(image) == 1
        assert get_image_size(image) == (5, 7)
        assert get_num_pixels(image) == 35

    def test_three_dimensional_input_keeps_channels(self) -> None:
        image = make_image_data(jnp.zeros((3, 10, 12)))
        assert get_num_channels(image) == 3
        assert get_image_size(image) == (10, 12)

    def test_non_finite_pixels_rejected(self) -> None:
        pixels = jnp.ones((4, 4)).at[1, 2].set(jnp.nan)
        with pytest.raises(ValueError, match="finite"):
            make_image_data(pixels)

    def test_empty_image_rejected(self) -> None:
        with pytest.raises(ValueError, match="must not be empty"):
            make_image_data(jnp.ones((3, 0, 4)))

    def test_pytree_compatibility(self) -> None:
        image = make_image_data(jnp.ones((2, 4, 4)))

        @jax.jit
        def fn(img: ImageData) -> ImageData:
            return ImageData(pixels=img.pixels * 2.0)

        doubled = fn(image)
        chex.assert_trees_all_close(doubled.pixels, 2.0 * image.pixels)


class TestResizeImage(chex.TestCase):
    """Test suite for resize_image and scale_image_size."""

    def test_scale_image_size(self) -> None:
        assert scale_image_size((10, 10), 4) == (40, 40)
        assert scale_image_size((3, 5), 2) == (6, 10)

    def test_nearest_upsampling_replicates_pixels(self) -> None:
        key = jax.random.PRNGKey(0)
        pixels = jax.random.uniform(key, (3, 10, 10), dtype=jnp.float64)
        image = make_image_data(pixels)
        resized = resize_image(image, (40, 40), InterpolationMode.NEAREST)
        chex.assert_shape(resized.pixels, (3, 40, 40))
        expected = jnp.repeat(jnp.repeat(pixels, 4, axis=1), 4, axis=2)
        chex.assert_trees_all_close(resized.pixels, expected)

    def test_nearest_creates_no_new_values(self) -> None:
        pixels = jnp.array([[0.0, 1.0], [2.0, 3.0]])
        resized = resize_image(make_image_data(pixels), (6, 6), InterpolationMode.NEAREST)
        unique_values = jnp.unique(resized.pixels)
        chex.assert_trees_all_close(unique_values, jnp.array([0.0, 1.0, 2.0, 3.0]))

    def test_input_is_not_modified(self) -> None:
        image = make_image_data(jnp.ones((2, 3, 3)))
        _ = resize_image(image, (9, 9), InterpolationMode.LINEAR)
        chex.assert_shape(image.pixels, (2, 3, 3))

    @parameterized.parameters(
        (InterpolationMode.NEAREST,),
        (InterpolationMode.LINEAR,),
        (InterpolationMode.CUBIC,),
    )
    def test_constant_image_stays_constant(self, mode) -> None:
        image = make_image_data(jnp.full((2, 4, 4), 0.25))
        resized = resize_image(image, (8, 12), mode)
        chex.assert_shape(resized.pixels, (2, 8, 12))
        chex.assert_trees_all_close(resized.pixels, jnp.full((2, 8, 12), 0.25))

    def test_invalid_target_size(self) -> None:
        image = make_image_data(jnp.ones((4, 4)))
        with pytest.raises(ValueError, match="Target size must be positive"):
            resize_image(image, (0, 4), InterpolationMode.NEAREST)
