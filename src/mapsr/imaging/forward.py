"""
Module: imaging.forward
-----------------------
Forward image formation model for multi-frame super-resolution.

The model maps a high-resolution (HR) estimate to the simulated appearance
of one observed low-resolution (LR) frame. The simulated frame is returned
on the HR pixel grid (every LR sample replicated into a scale x scale
block) so that it can be compared pixelwise with observations that were
resampled onto the same grid with nearest-neighbour replication.

Classes
-------
- `ImageModel`:
    A named tuple holding the downsampling scale, optional blur kernel and
    optional per-frame motion shifts

Factory Functions
-----------------
- `make_image_model`:
    Creates an ImageModel instance with validation

Functions
---------
- `gaussian_blur_kernel`:
    Normalized square Gaussian point spread function
- `get_downsampling_scale`:
    Integer upsampling factor between the LR and HR grids
- `fourier_shift`:
    Sub-pixel translation of every channel via the Fourier shift theorem
- `blur_image`:
    Per-channel 2D convolution with the blur kernel
- `decimate_and_hold`:
    Strided downsampling followed by nearest replication back to HR size
- `apply_image_model`:
    Full forward operator for one frame
- `image_model_gradient`:
    Adjoint of the forward operator applied to a cotangent image
"""

from typing import Callable, Optional, Tuple

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import NamedTuple
from jax.tree_util import register_pytree_node_class
from jax.scipy.signal import convolve2d
from jaxtyping import Array, Complex, Float, jaxtyped

from .image_types import scalar_float, scalar_int

jax.config.update("jax_enable_x64", True)


@register_pytree_node_class
class ImageModel(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the image formation model.

    Attributes
    ----------
    - `downsampling_scale` (int):
        Integer factor between the HR and LR grids. Static (auxiliary data).
    - `blur_kernel` (Optional[Float[Array, "K K"]]):
        Point spread function applied on the HR grid, or None.
    - `motion_shifts` (Optional[Float[Array, "N 2"]]):
        Per-frame (dy, dx) translation in HR pixels, or None for a static
        scene. Row i belongs to observation i.
    """

    downsampling_scale: int
    blur_kernel: Optional[Float[Array, "K K"]]
    motion_shifts: Optional[Float[Array, "N 2"]]

    def tree_flatten(self):
        return (
            (
                self.blur_kernel,
                self.motion_shifts,
            ),
            (self.downsampling_scale,),
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(aux_data[0], *children)


@jaxtyped(typechecker=beartype)
def gaussian_blur_kernel(
    sigma: scalar_float,
    radius: int,
) -> Float[Array, "K K"]:
    """
    Description
    -----------
    Build a normalized (2 * radius + 1) square Gaussian kernel.

    Parameters
    ----------
    - `sigma` (scalar_float):
        Standard deviation in HR pixels. Must be positive.
    - `radius` (int):
        Half width of the kernel. Must be non-negative.

    Returns
    -------
    - `kernel` (Float[Array, "K K"]):
        Kernel whose entries sum to one.
    """
    if radius < 0:
        raise ValueError(f"Kernel radius must be non-negative, got {radius}")
    if not float(sigma) > 0.0:
        raise ValueError(f"Kernel sigma must be positive, got {sigma}")
    offsets: Float[Array, "K"] = jnp.arange(-radius, radius + 1, dtype=jnp.float64)
    profile: Float[Array, "K"] = jnp.exp(-0.5 * (offsets / sigma) ** 2)
    kernel: Float[Array, "K K"] = jnp.outer(profile, profile)
    return kernel / jnp.sum(kernel)


@jaxtyped(typechecker=beartype)
def make_image_model(
    downsampling_scale: int,
    blur_kernel: Optional[Float[Array, "K K"]] = None,
    motion_shifts: Optional[Float[Array, "N 2"]] = None,
) -> ImageModel:
    """
    Description
    -----------
    Factory function for ImageModel with data validation.

    Parameters
    ----------
    - `downsampling_scale` (int):
        Integer scale between the grids, at least 1.
    - `blur_kernel` (Optional[Float[Array, "K K"]]):
        Square, odd-sized, finite point spread function. Default None.
    - `motion_shifts` (Optional[Float[Array, "N 2"]]):
        Per-frame (dy, dx) shifts in HR pixels. Default None.

    Returns
    -------
    - `image_model` (ImageModel):
        Validated image model

    Raises
    ------
    - ValueError:
        If the scale is below 1, the kernel is not odd-sized or not finite,
        or the shifts are not finite

    Flow
    ----
    - Shapes and types are checked by the jaxtyped decorator
    - Check the scale and the kernel size, then finiteness of the arrays
    """
    if downsampling_scale < 1:
        raise ValueError(f"Downsampling scale must be >= 1, got {downsampling_scale}")
    if blur_kernel is not None:
        blur_kernel = jnp.asarray(blur_kernel, dtype=jnp.float64)
        if blur_kernel.shape[0] % 2 != 1:
            raise ValueError(f"Blur kernel size must be odd, got {blur_kernel.shape[0]}")
        if not bool(jnp.all(jnp.isfinite(blur_kernel))):
            raise ValueError("Blur kernel must be finite")
    if motion_shifts is not None:
        motion_shifts = jnp.asarray(motion_shifts, dtype=jnp.float64)
        if not bool(jnp.all(jnp.isfinite(motion_shifts))):
            raise ValueError("Motion shifts must be finite")
    return ImageModel(
        downsampling_scale=downsampling_scale,
        blur_kernel=blur_kernel,
        motion_shifts=motion_shifts,
    )


def get_downsampling_scale(image_model: ImageModel) -> int:
    """Integer upsampling factor between the LR and HR grids."""
    return image_model.downsampling_scale


def fourier_shift(
    pixels: Float[Array, "C H W"],
    shift: Float[Array, "2"],
) -> Float[Array, "C H W"]:
    """
    Description
    -----------
    Translate every channel by (dy, dx) pixels with a Fourier phase ramp.
    The image is treated as periodic.

    Parameters
    ----------
    - `pixels` (Float[Array, "C H W"]):
        Image to shift.
    - `shift` (Float[Array, "2"]):
        (dy, dx) translation in pixels. Need not be integer.

    Returns
    -------
    - `shifted` (Float[Array, "C H W"]):
        Real part of the shifted image.
    """
    height: int = pixels.shape[1]
    width: int = pixels.shape[2]
    freq_y: Float[Array, "H"] = jnp.fft.fftfreq(height)
    freq_x: Float[Array, "W"] = jnp.fft.fftfreq(width)
    phase: Complex[Array, "H W"] = jnp.exp(
        -2j * jnp.pi * (freq_y[:, None] * shift[0] + freq_x[None, :] * shift[1])
    )
    spectrum: Complex[Array, "C H W"] = jnp.fft.fft2(pixels, axes=(-2, -1))
    shifted: Complex[Array, "C H W"] = jnp.fft.ifft2(
        spectrum * phase[None, :, :], axes=(-2, -1)
    )
    return jnp.real(shifted)


def blur_image(
    pixels: Float[Array, "C H W"],
    kernel: Float[Array, "K K"],
) -> Float[Array, "C H W"]:
    """Convolve every channel with the kernel, zero padded, same size output."""
    convolve_channel: Callable = lambda plane: convolve2d(
        plane, kernel, mode="same"
    )
    return jax.vmap(convolve_channel)(pixels)


def decimate_and_hold(
    pixels: Float[Array, "C H W"],
    scale: int,
) -> Float[Array, "C H W"]:
    """
    Description
    -----------
    Sample every `scale`-th pixel of each channel and replicate each sample
    back into a scale x scale block, so the output keeps the HR shape.

    Parameters
    ----------
    - `pixels` (Float[Array, "C H W"]):
        HR image whose height and width are multiples of `scale`.
    - `scale` (int):
        Downsampling factor.

    Returns
    -------
    - `held` (Float[Array, "C H W"]):
        LR samples held on the HR grid.
    """
    if scale == 1:
        return pixels
    samples: Float[Array, "C h w"] = pixels[:, ::scale, ::scale]
    held: Float[Array, "C H W"] = jnp.repeat(
        jnp.repeat(samples, scale, axis=1), scale, axis=2
    )
    return held


def apply_image_model(
    image_model: ImageModel,
    hr_pixels: Float[Array, "C H W"],
    frame_index: scalar_int,
) -> Float[Array, "C H W"]:
    """
    Description
    -----------
    Simulate observation `frame_index` from an HR estimate.

    Parameters
    ----------
    - `image_model` (ImageModel):
        Image formation model.
    - `hr_pixels` (Float[Array, "C H W"]):
        HR estimate.
    - `frame_index` (scalar_int):
        Index of the observation being simulated; selects the motion shift.

    Returns
    -------
    - `simulated` (Float[Array, "C H W"]):
        Simulated LR frame held on the HR grid.

    Flow
    ----
    1. Translate by the frame's motion shift, if the model has one
    2. Blur with the point spread function, if the model has one
    3. Decimate by the downsampling scale and hold on the HR grid
    """
    simulated: Float[Array, "C H W"] = hr_pixels
    if image_model.motion_shifts is not None:
        simulated = fourier_shift(simulated, image_model.motion_shifts[frame_index])
    if image_model.blur_kernel is not None:
        simulated = blur_image(simulated, image_model.blur_kernel)
    simulated = decimate_and_hold(simulated, image_model.downsampling_scale)
    return simulated


def image_model_gradient(
    image_model: ImageModel,
    hr_pixels: Float[Array, "C H W"],
    frame_index: scalar_int,
    cotangent: Float[Array, "C H W"],
) -> Float[Array, "C H W"]:
    """
    Description
    -----------
    Apply the adjoint of `apply_image_model` (linearized at `hr_pixels`)
    to a cotangent image on the HR grid.

    Parameters
    ----------
    - `image_model` (ImageModel):
        Image formation model.
    - `hr_pixels` (Float[Array, "C H W"]):
        HR estimate at which to linearize.
    - `frame_index` (scalar_int):
        Index of the simulated observation.
    - `cotangent` (Float[Array, "C H W"]):
        Image in the output space of the forward operator, e.g. a residual.

    Returns
    -------
    - `gradient` (Float[Array, "C H W"]):
        Aᵀ @ cotangent in the HR parameter space.
    """
    forward_fn: Callable = lambda pixels: apply_image_model(
        image_model, pixels, frame_index
    )
    _, vjp_fn = jax.vjp(forward_fn, hr_pixels)
    result: Tuple[Float[Array, "C H W"]] = vjp_fn(cotangent)
    return result[0]
