"""Base class for flat parameter spaces.

In practice, every learnable quantity of a model lives in one flat array, and a `Manifold` describes how many coordinates that array has and how to create and validate it. Structured views (matrices, bias vectors) are always derived from the flat array on demand rather than stored.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import jax.numpy as jnp
from jax import Array


class Manifold(ABC):
    """A space of flat coordinate arrays.

    Subclasses declare their dimension; the array operations here work for any of them.
    """

    # Abstract methods

    @property
    @abstractmethod
    def dim(self) -> int:
        """The number of coordinates of a point."""
        ...

    @property
    def coordinates_shape(self) -> list[int]:
        """Shape of the flat coordinate array for points on this manifold.

        This describes **storage layout**. The mathematical shape of a block (e.g. a weight tensor) is carried separately, so that points can always be concatenated into composite manifolds.
        """
        return [self.dim]

    # Array operations

    def zeros(self) -> Array:
        """Create an array of zeros with the manifold's dimension."""
        return jnp.zeros(self.coordinates_shape)

    def check_coords(self, coords: Array, name: str = "params") -> None:
        """Raise if ``coords`` is not a flat array of length ``dim``.

        Raises:
            ValueError: If the array has the wrong shape
        """
        if coords.shape != (self.dim,):
            raise ValueError(
                f"{name} must be a flat array of length {self.dim}, got shape {coords.shape}"
            )

