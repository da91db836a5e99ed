"""Generic contrastive-divergence machinery for two-layer energy-based models.

A harmonium here is any bipartite model whose two conditionals can be sampled in closed form. Subclasses provide the sampling and phase-statistic primitives for a single visible configuration; this module turns them into Gibbs chains and contrastive-divergence gradients. How many Gibbs steps to run is always chosen by the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import NamedTuple

import jax
from jax import Array

from .manifold.base import Manifold
from .manifold.util import batched_mean


class VisibleSample(NamedTuple):
    """Outcome of a bounded-effort visible draw."""

    sample: Array
    """The returned visible configuration."""
    accepted: Array
    """Boolean scalar, true if ``sample`` satisfies the sampler's acceptance region."""
    n_draws: Array
    """Integer scalar, number of draws made before stopping."""


class GibbsHarmonium(Manifold, ABC):
    """Bipartite model trained by block Gibbs sampling and contrastive divergence.

    Points on the manifold are flat parameter arrays. Phase statistics are returned in the same flat layout, in *ascent* convention (the direction that increases log-likelihood for a data point); `contrastive_divergence_step` combines them into a *descent* gradient suitable for optax.
    """

    # Contract

    @abstractmethod
    def sample_hidden(self, key: Array, params: Array, visible: Array) -> Array:
        """Draw a flat hidden configuration given a visible one."""

    @abstractmethod
    def sample_visible(self, key: Array, params: Array, hidden: Array) -> VisibleSample:
        """Draw a visible configuration given a flat hidden one."""

    @abstractmethod
    def positive_phase(self, key: Array, params: Array, visible: Array) -> Array:
        """Sufficient statistics driven by a data point, in parameter layout."""

    @abstractmethod
    def negative_phase(self, key: Array, params: Array, visible: Array) -> Array:
        """Sufficient statistics driven by a model sample, in parameter layout."""

    # Gibbs sampling

    def gibbs_step(self, key: Array, params: Array, visible: Array) -> Array:
        """Advance a chain by one alternation v -> h -> v'."""
        hid_key, vis_key = jax.random.split(key)
        hidden = self.sample_hidden(hid_key, params, visible)
        return self.sample_visible(vis_key, params, hidden).sample

    def gibbs_chain(
        self, key: Array, params: Array, visible: Array, n_steps: int
    ) -> Array:
        """Run ``n_steps`` Gibbs alternations starting from ``visible``.

        Args:
            key: JAX random key
            params: Model parameters
            visible: Initial visible configuration
            n_steps: Number of alternations (static)

        Returns:
            Final visible configuration
        """
        if n_steps < 0:
            raise ValueError(f"n_steps must be non-negative, got {n_steps}")

        def step(state: Array, step_key: Array) -> tuple[Array, None]:
            return self.gibbs_step(step_key, params, state), None

        final, _ = jax.lax.scan(step, visible, jax.random.split(key, n_steps))
        return final

    # Contrastive divergence

    def contrastive_divergence_step(
        self, key: Array, params: Array, visible: Array, k: int = 1
    ) -> Array:
        """CD-k gradient for one data point, in descent convention.

        Returns ``negative_phase(v_k) - positive_phase(v_0)`` where ``v_k`` ends a ``k``-step chain started at the data point.
        """
        if k < 1:
            raise ValueError(f"Contrastive divergence needs k >= 1, got {k}")
        chain_key, pos_key, neg_key = jax.random.split(key, 3)
        negative = self.gibbs_chain(chain_key, params, visible, k)
        positive_stats = self.positive_phase(pos_key, params, visible)
        negative_stats = self.negative_phase(neg_key, params, negative)
        return negative_stats - positive_stats

    def mean_contrastive_divergence_gradient(
        self,
        key: Array,
        params: Array,
        xs: Array,
        k: int = 1,
        batch_size: int = 256,
    ) -> Array:
        """Average CD-k gradient over a batch of visible configurations."""
        keys = jax.random.split(key, xs.shape[0])

        def cd_gradient(point_key: Array, x: Array) -> Array:
            return self.contrastive_divergence_step(point_key, params, x, k)

        return batched_mean(cd_gradient, keys, xs, batch_size)
