"""
Module: mapsr
-------------
JAX-based maximum-a-posteriori multi-frame super-resolution.

Submodules
----------
- `imaging`:
    Image frames, resampling and the forward image formation model
- `optimization`:
    Solver options, regularizers, the MAP objective and its backends
"""

from . import imaging, optimization

__all__: list[str] = ["imaging", "optimization"]
