"""
Module: mapsr.imaging
---------------------
Image frames and the forward image formation model.

Submodules
----------
- `image_types`:
    ImageData container, factory, size queries and explicit-mode resampling
- `forward`:
    ImageModel with motion, blur and decimation, and its adjoint
"""

from .forward import (
    ImageModel,
    apply_image_model,
    blur_image,
    decimate_and_hold,
    fourier_shift,
    gaussian_blur_kernel,
    get_downsampling_scale,
    image_model_gradient,
    make_image_model,
)
from .image_types import (
    ImageData,
    InterpolationMode,
    get_image_size,
    get_num_channels,
    get_num_pixels,
    make_image_data,
    resize_image,
    scalar_float,
    scalar_int,
    scale_image_size,
)

__all__: list[str] = [
    "ImageData",
    "ImageModel",
    "InterpolationMode",
    "apply_image_model",
    "blur_image",
    "decimate_and_hold",
    "fourier_shift",
    "gaussian_blur_kernel",
    "get_downsampling_scale",
    "get_image_size",
    "get_num_channels",
    "get_num_pixels",
    "image_model_gradient",
    "make_image_data",
    "make_image_model",
    "resize_image",
    "scalar_float",
    "scalar_int",
    "scale_image_size",
]
