"""Classes for packing several shaped blocks into one flat coordinate array.

A model's parameters are a `Triple` of `Block` manifolds. The triple knows where each block starts and stops, so views onto the flat array are computed on demand and never go stale when the array is replaced.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import override

import jax.numpy as jnp
from jax import Array

from .base import Manifold


@dataclass(frozen=True)
class Block(Manifold):
    """A contiguous block of coordinates with a fixed tensor shape.

    The block is stored flat (row-major) and reshaped to `shape` when read.
    """

    shape: tuple[int, ...]
    """Tensor shape of the block."""

    @property
    @override
    def dim(self) -> int:
        return math.prod(self.shape)

    def to_tensor(self, coords: Array) -> Array:
        """Reshape flat block coordinates into the block's tensor shape."""
        return coords.reshape(self.shape)

    def from_tensor(self, tensor: Array) -> Array:
        """Flatten a tensor of the block's shape.

        Raises:
            ValueError: If the tensor does not have the block's shape
        """
        if tuple(tensor.shape) != self.shape:
            raise ValueError(
                f"Expected a tensor of shape {self.shape}, got {tuple(tensor.shape)}"
            )
        return tensor.ravel()


@dataclass(frozen=True)
class Triple[First: Manifold, Second: Manifold, Third: Manifold](Manifold, ABC):
    """Triple combines three coordinate spaces, providing methods to split coordinates into their respective components and join them back together.

    In theory, this is the Cartesian product $\\mathcal M_1 \\times \\mathcal M_2 \\times \\mathcal M_3$, whose dimension is the sum of the component dimensions.
    """

    # Contract

    @property
    @abstractmethod
    def fst_man(self) -> First:
        """First component manifold."""

    @property
    @abstractmethod
    def snd_man(self) -> Second:
        """Second component manifold."""

    @property
    @abstractmethod
    def trd_man(self) -> Third:
        """Third component manifold."""

    # Overrides

    @property
    @override
    def dim(self) -> int:
        """Total dimension is the sum of component dimensions."""
        return self.fst_man.dim + self.snd_man.dim + self.trd_man.dim

    # Methods

    @property
    def offsets(self) -> tuple[tuple[int, int], tuple[int, int], tuple[int, int]]:
        """Half-open ``(start, stop)`` ranges of the three components in the flat array."""
        first_end = self.fst_man.dim
        second_end = first_end + self.snd_man.dim
        return ((0, first_end), (first_end, second_end), (second_end, self.dim))

    def split_coords(self, coords: Array) -> tuple[Array, Array, Array]:
        """Split coordinates into first, second, and third components.

        Args:
            coords: Array of concatenated coordinates

        Returns:
            Tuple of (fst_coords, snd_coords, trd_coords)
        """
        self.check_coords(coords)
        (a, b), (_, c), (_, d) = self.offsets
        return coords[a:b], coords[b:c], coords[c:d]

    def join_coords(
        self, fst_coords: Array, snd_coords: Array, trd_coords: Array
    ) -> Array:
        """Join component coordinates into a single array.

        Args:
            fst_coords: coordinates from first manifold
            snd_coords: coordinates from second manifold
            trd_coords: coordinates from third manifold

        Returns:
            Concatenated array
        """
        coords = jnp.concatenate(
            [fst_coords.ravel(), snd_coords.ravel(), trd_coords.ravel()]
        )
        self.check_coords(coords)
        return coords
