"""
Module: imaging.image_types
---------------------------
Data structures and resampling for multi-channel image frames.

Type Aliases
------------
- `scalar_float`:
    Type alias for float or Float array of 0 dimensions
- `scalar_int`:
    Type alias for int or Int array of 0 dimensions
- `image_size`:
    Type alias for a (height, width) tuple of Python ints

Classes
-------
- `InterpolationMode`:
    Resampling policy passed explicitly to `resize_image`
- `ImageData`:
    A named tuple holding a channel-first stack of pixel planes

Factory Functions
-----------------
- `make_image_data`:
    Creates an ImageData instance with runtime type checking

Functions
---------
- `get_num_channels`:
    Number of channels of an image
- `get_image_size`:
    (height, width) of an image
- `get_num_pixels`:
    height * width of an image
- `scale_image_size`:
    Componentwise integer scaling of an image size
- `resize_image`:
    Resample all channels of an image to a new size

Note
----
Always use `make_image_data` instead of directly instantiating the
NamedTuple so that 2D inputs are promoted to a single channel and the
contents are validated.
"""

from enum import Enum

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import NamedTuple, Tuple, TypeAlias, Union
from jax.tree_util import register_pytree_node_class
from jaxtyping import Array, Float, Int, jaxtyped

jax.config.update("jax_enable_x64", True)

scalar_float: TypeAlias = Union[float, Float[Array, ""]]
scalar_int: TypeAlias = Union[int, Int[Array, ""]]
image_size: TypeAlias = Tuple[int, int]


class InterpolationMode(Enum):
    """
    Resampling policy for `resize_image`.

    `NEAREST` never creates new intensity values: every output pixel is a
    copy of exactly one input pixel.
    """

    NEAREST = "nearest"
    LINEAR = "linear"
    CUBIC = "cubic"


@register_pytree_node_class
class ImageData(NamedTuple):
    """
    Description
    -----------
    PyTree structure for a multi-channel image.

    Attributes
    ----------
    - `pixels` (Float[Array, "C H W"]):
        Channel-first pixel planes. C is the number of channels.

    Notes
    -----
    This class is registered as a PyTree node, making it compatible with JAX
    transformations like jit, grad, and vmap. The auxiliary data in
    tree_flatten is None as all relevant data is stored in JAX arrays.
    """

    pixels: Float[Array, "C H W"]

    def tree_flatten(self):
        return ((self.pixels,), None)

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


@jaxtyped(typechecker=beartype)
def make_image_data(
    pixels: Union[Float[Array, "H W"], Float[Array, "C H W"]],
) -> ImageData:
    """
    Description
    -----------
    Factory function for ImageData with data validation.

    Parameters
    ----------
    - `pixels` (Union[Float[Array, "H W"], Float[Array, "C H W"]]):
        Pixel values. A 2D array is treated as a single channel image.

    Returns
    -------
    - `image` (ImageData):
        Validated image instance with float64 pixels of shape (C, H, W)

    Raises
    ------
    - ValueError:
        If the image has no pixels or contains non-finite values

    Flow
    ----
    - Promote 2D input to a single channel
    - Convert to float64
    - Check that no dimension is empty
    - Check that all values are finite
    """
    pixels = jnp.asarray(pixels, dtype=jnp.float64)
    if pixels.ndim == 2:
        pixels = pixels[jnp.newaxis, ...]
    if 0 in pixels.shape:
        raise ValueError(f"Image must not be empty, got shape {pixels.shape}")
    if not bool(jnp.all(jnp.isfinite(pixels))):
        raise ValueError("Image pixels must all be finite")
    return ImageData(pixels=pixels)


def get_num_channels(image: ImageData) -> int:
    """Number of channels C of the image."""
    return int(image.pixels.shape[0])


def get_image_size(image: ImageData) -> image_size:
    """(height, width) of the image."""
    return (int(image.pixels.shape[1]), int(image.pixels.shape[2]))


def get_num_pixels(image: ImageData) -> int:
    """Number of pixels in a single channel."""
    height, width = get_image_size(image)
    return height * width


def scale_image_size(size: image_size, factor: int) -> image_size:
    """Scale (height, width) componentwise by an integer factor."""
    return (size[0] * factor, size[1] * factor)


def resize_image(
    image: ImageData,
    size: image_size,
    mode: InterpolationMode,
) -> ImageData:
    """
    Description
    -----------
    Resample every channel of an image onto a new pixel grid.

    The interpolation policy is always given explicitly. With
    `InterpolationMode.NEAREST` an integer upscaling by k replicates every
    input pixel into a k x k block.

    Parameters
    ----------
    - `image` (ImageData):
        Image to resample. It is not modified.
    - `size` (image_size):
        Target (height, width).
    - `mode` (InterpolationMode):
        Resampling policy.

    Returns
    -------
    - `resized` (ImageData):
        New image of shape (C, size[0], size[1]).

    Raises
    ------
    - ValueError:
        If the target size is not positive
    """
    if size[0] < 1 or size[1] < 1:
        raise ValueError(f"Target size must be positive, got {size}")
    num_channels: int = get_num_channels(image)
    target_shape: Tuple[int, int, int] = (num_channels, size[0], size[1])
    resized_pixels: Float[Array, "C h w"] = jax.image.resize(
        image.pixels,
        shape=target_shape,
        method=mode.value,
    )
    return ImageData(pixels=resized_pixels)
