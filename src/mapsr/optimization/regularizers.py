"""
Module: optimization.regularizers
---------------------------------
Regularization terms for MAP super-resolution and their weighted sum.

A regularizer is a pure function of the HR estimate: it holds no mutable
state, so a single instance may be bound several times with different
weights and shared between solvers.

Classes
-------
- `Regularizer`:
    A named tuple with a name, a cost operator and an optional gradient
    operator
- `RegularizerBinding`:
    A (regularizer, weight) pair

Factory Functions
-----------------
- `make_total_variation_regularizer`:
    Smoothed isotropic total variation
- `make_bilateral_total_variation_regularizer`:
    Bilateral total variation over a window of shifts
- `make_tikhonov_regularizer`:
    Squared norm of the image gradient, with a closed form gradient

Functions
---------
- `regularizer_cost`:
    Evaluate one regularizer
- `regularizer_gradient`:
    Gradient of one regularizer, falling back to autodiff
- `bind_regularizer`:
    Append a validated binding to an ordered tuple of bindings
- `regularization_parameter_sum`:
    Sum of the weights of a tuple of bindings
- `weighted_regularization_cost`:
    Σ_j weight_j * cost_j
- `weighted_regularization_gradient`:
    Σ_j weight_j * gradient_j
"""

import math
from typing import Callable, Optional, Tuple

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import NamedTuple
from jaxtyping import Array, Float

jax.config.update("jax_enable_x64", True)


class Regularizer(NamedTuple):
    """
    Description
    -----------
    Penalty on the HR estimate.

    Attributes
    ----------
    - `name` (str):
        Human readable name, used in diagnostics.
    - `cost_fn` (Callable[[Float[Array, "C H W"]], Float[Array, ""]]):
        Scalar cost of an image.
    - `gradient_fn` (Optional[Callable[[Float[Array, "C H W"]], Float[Array, "C H W"]]]):
        Gradient of `cost_fn`, or None to use autodiff.
    """

    name: str
    cost_fn: Callable[[Float[Array, "C H W"]], Float[Array, ""]]
    gradient_fn: Optional[Callable[[Float[Array, "C H W"]], Float[Array, "C H W"]]] = None


class RegularizerBinding(NamedTuple):
    """A regularizer together with its non-negative weight."""

    regularizer: Regularizer
    weight: float


def regularizer_cost(
    regularizer: Regularizer,
    pixels: Float[Array, "C H W"],
) -> Float[Array, ""]:
    return regularizer.cost_fn(pixels)


def regularizer_gradient(
    regularizer: Regularizer,
    pixels: Float[Array, "C H W"],
) -> Float[Array, "C H W"]:
    if regularizer.gradient_fn is not None:
        return regularizer.gradient_fn(pixels)
    return jax.grad(regularizer.cost_fn)(pixels)


def _forward_differences(
    pixels: Float[Array, "C H W"],
) -> Tuple[Float[Array, "C H W"], Float[Array, "C H W"]]:
    """Forward differences along y and x, zero on the last row / column."""
    diff_y: Float[Array, "C H W"] = jnp.diff(pixels, axis=1, append=pixels[:, -1:, :])
    diff_x: Float[Array, "C H W"] = jnp.diff(pixels, axis=2, append=pixels[:, :, -1:])
    return diff_y, diff_x


@beartype
def make_total_variation_regularizer(epsilon: float = 1.0e-8) -> Regularizer:
    """
    Description
    -----------
    Isotropic total variation, Σ sqrt(dy² + dx² + epsilon).

    Parameters
    ----------
    - `epsilon` (float):
        Smoothing constant keeping the cost differentiable at flat regions.
        Must be positive. Default 1e-8.

    Returns
    -------
    - `regularizer` (Regularizer):
        Total variation regularizer, gradient by autodiff.
    """
    if not epsilon > 0.0:
        raise ValueError(f"epsilon must be positive, got {epsilon}")

    def total_variation_cost(pixels: Float[Array, "C H W"]) -> Float[Array, ""]:
        diff_y, diff_x = _forward_differences(pixels)
        return jnp.sum(jnp.sqrt(diff_y**2 + diff_x**2 + epsilon))

    return Regularizer(name="total variation", cost_fn=total_variation_cost)


@beartype
def make_bilateral_total_variation_regularizer(
    scale_range: int = 2,
    spatial_decay: float = 0.7,
    epsilon: float = 1.0e-8,
) -> Regularizer:
    """
    Description
    -----------
    Bilateral total variation:
    Σ_{l,m} decay^(l+m) Σ |X - shift(X, l, m)|, over 0 <= l, m <= scale_range
    with (l, m) != (0, 0). The absolute value is smoothed with epsilon and
    shifts wrap around the image border.

    Parameters
    ----------
    - `scale_range` (int):
        Largest shift in pixels, at least 1. Default 2.
    - `spatial_decay` (float):
        Weight decay per pixel of shift, in (0, 1]. Default 0.7.
    - `epsilon` (float):
        Smoothing constant, positive. Default 1e-8.

    Returns
    -------
    - `regularizer` (Regularizer):
        Bilateral total variation regularizer, gradient by autodiff.
    """
    if scale_range < 1:
        raise ValueError(f"scale_range must be >= 1, got {scale_range}")
    if not 0.0 < spatial_decay <= 1.0:
        raise ValueError(f"spatial_decay must be in (0, 1], got {spatial_decay}")
    if not epsilon > 0.0:
        raise ValueError(f"epsilon must be positive, got {epsilon}")
    shifts = [
        (l, m)
        for l in range(scale_range + 1)
        for m in range(scale_range + 1)
        if (l, m) != (0, 0)
    ]

    def bilateral_total_variation_cost(
        pixels: Float[Array, "C H W"],
    ) -> Float[Array, ""]:
        cost: Float[Array, ""] = jnp.array(0.0)
        for l, m in shifts:
            shifted: Float[Array, "C H W"] = jnp.roll(pixels, shift=(l, m), axis=(1, 2))
            difference: Float[Array, "C H W"] = pixels - shifted
            cost = cost + (spatial_decay ** (l + m)) * jnp.sum(
                jnp.sqrt(difference**2 + epsilon)
            )
        return cost

    return Regularizer(
        name="bilateral total variation", cost_fn=bilateral_total_variation_cost
    )


def make_tikhonov_regularizer() -> Regularizer:
    """
    Description
    -----------
    Squared norm of the image gradient, Σ (dy² + dx²), with the closed form
    gradient 2 (Dyᵀ Dy + Dxᵀ Dx) X.

    Returns
    -------
    - `regularizer` (Regularizer):
        Tikhonov regularizer with an explicit gradient operator.
    """

    def tikhonov_cost(pixels: Float[Array, "C H W"]) -> Float[Array, ""]:
        diff_y, diff_x = _forward_differences(pixels)
        return jnp.sum(diff_y**2) + jnp.sum(diff_x**2)

    def tikhonov_gradient(pixels: Float[Array, "C H W"]) -> Float[Array, "C H W"]:
        diff_y, diff_x = _forward_differences(pixels)
        # Adjoint of the forward difference: (Dᵀr)[j] = r[j-1] - r[j].
        adjoint_y: Float[Array, "C H W"] = -jnp.diff(
            diff_y, axis=1, prepend=jnp.zeros_like(diff_y[:, :1, :])
        )
        adjoint_x: Float[Array, "C H W"] = -jnp.diff(
            diff_x, axis=2, prepend=jnp.zeros_like(diff_x[:, :, :1])
        )
        return 2.0 * (adjoint_y + adjoint_x)

    return Regularizer(
        name="tikhonov", cost_fn=tikhonov_cost, gradient_fn=tikhonov_gradient
    )


def bind_regularizer(
    bindings: Tuple[RegularizerBinding, ...],
    regularizer: Regularizer,
    weight: float,
) -> Tuple[RegularizerBinding, ...]:
    """
    Description
    -----------
    Return `bindings` with (regularizer, weight) appended. The same
    regularizer may be bound any number of times.

    Raises
    ------
    - ValueError:
        If the weight is negative or not finite
    """
    weight = float(weight)
    if not math.isfinite(weight) or weight < 0.0:
        raise ValueError(
            f"Regularization weight must be finite and non-negative, got {weight}"
        )
    return bindings + (RegularizerBinding(regularizer=regularizer, weight=weight),)


def regularization_parameter_sum(bindings: Tuple[RegularizerBinding, ...]) -> float:
    total: float = 0.0
    for binding in bindings:
        total += binding.weight
    return total


def weighted_regularization_cost(
    bindings: Tuple[RegularizerBinding, ...],
    pixels: Float[Array, "C H W"],
) -> Float[Array, ""]:
    cost: Float[Array, ""] = jnp.array(0.0)
    for binding in bindings:
        cost = cost + binding.weight * regularizer_cost(binding.regularizer, pixels)
    return cost


def weighted_regularization_gradient(
    bindings: Tuple[RegularizerBinding, ...],
    pixels: Float[Array, "C H W"],
) -> Float[Array, "C H W"]:
    gradient: Float[Array, "C H W"] = jnp.zeros_like(pixels)
    for binding in bindings:
        gradient = gradient + binding.weight * regularizer_gradient(
            binding.regularizer, pixels
        )
    return gradient
