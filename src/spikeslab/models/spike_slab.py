"""Spike-and-slab Restricted Boltzmann Machine (ssRBM).

The ssRBM couples a real-valued visible layer to hidden units that each factor into a binary *spike* gate $h_i$ and a pool of $P$ real-valued *slab* variables $s_i \\in \\mathbb R^P$. With weights $W_i \\in \\mathbb R^{V \\times P}$, spike biases $b$, diagonal visible precision $\\Lambda$ and fixed slab precisions $\\alpha_i \\in \\mathbb R^P_{>0}$, the energy is

$$
E(v, s, h) = \\frac12 v^T \\Lambda v - \\sum_i \\left( v^T W_i s_i h_i - \\frac12 s_i^T \\operatorname{diag}(\\alpha_i) s_i + b_i h_i \\right).
$$

Integrating out the slab analytically gives the free energy

$$
F(v) = \\frac12 v^T \\Lambda v - \\sum_{i,k} \\frac12 \\log \\frac{2\\pi}{\\alpha_{ik}} - \\sum_i \\operatorname{softplus}\\left( b_i + \\sum_k \\frac{(v^T W_{i,:k})^2}{2 \\alpha_{ik}} \\right),
$$

so likelihood evaluation never needs slab samples. The conditionals used for Gibbs sampling are

- $p(h_i = 1 \\mid v) = \\sigma(\\frac12 v^T W_i \\operatorname{diag}(\\alpha_i)^{-1} W_i^T v + b_i)$,
- $s_i \\mid v, h_i \\sim \\mathcal N(h_i \\operatorname{diag}(\\alpha_i)^{-1} W_i^T v, \\operatorname{diag}(\\alpha_i)^{-1})$,
- $v \\mid s, h \\sim \\mathcal N(\\Lambda^{-1} \\sum_i W_i s_i h_i, \\Lambda^{-1})$, restricted (with bounded effort) to the ball of radius ``radius``.

All methods are pure functions of a flat parameter array and, where random, an explicit JAX key, so they can be jitted, vmapped and called concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple, override

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array

from ..geometry.harmonium import GibbsHarmonium, VisibleSample
from ..geometry.manifold.combinators import Block, Triple

MAX_VISIBLE_TRIALS = 10
"""Maximum number of draws the visible sampler makes before giving up on the radius bound."""


class SpikeSlabParams(NamedTuple):
    """Structured views of a flat ssRBM parameter array."""

    weights: Array
    """Weight tensor of shape (n_hidden, n_visible, pool_size); ``weights[i]`` is $W_i$."""
    spike_bias: Array
    """Spike biases of shape (n_hidden,)."""
    visible_precision: Array
    """Diagonal visible precision of shape (n_visible,)."""


@dataclass(frozen=True)
class SpikeSlabRBM(GibbsHarmonium, Triple[Block, Block, Block]):
    """Spike-and-slab RBM over a flat parameter array.

    The parameter array has length ``V*P*H + H + V`` and is laid out as

    - the weight block, hidden-major, each hidden unit's V x P matrix stored column-major,
    - the spike biases,
    - the visible precisions.

    `offsets` gives the exact ranges and `reset` returns the structured views.

    Attributes:
        n_visible: Number of visible units (V)
        n_hidden: Number of hidden units (H)
        pool_size: Number of slab variables per hidden unit (P)
        slab_precision: Fixed slab precisions, shape (P, H), strictly positive
        radius: Norm bound on accepted visible samples
    """

    n_visible: int
    """Number of visible units."""

    n_hidden: int
    """Number of hidden units (spike gates)."""

    pool_size: int
    """Number of slab variables sharing each spike gate."""

    slab_precision: tuple[tuple[float, ...], ...]
    """Slab precision hyperparameters, P rows of H values."""

    radius: float
    """Visible samples are redrawn until their norm is below this bound."""

    def __post_init__(self) -> None:
        for name in ("n_visible", "n_hidden", "pool_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

        precision = np.asarray(self.slab_precision, dtype=np.float64)
        expected = (self.pool_size, self.n_hidden)
        if precision.shape != expected:
            raise ValueError(
                f"slab_precision must have shape {expected} (pool_size, n_hidden), got {precision.shape}"
            )
        if not np.all(np.isfinite(precision)) or np.any(precision <= 0):
            raise ValueError("slab_precision must be finite and strictly positive")
        if not self.radius > 0:
            raise ValueError(f"radius must be positive, got {self.radius}")

        # Store a hashable copy so the model can be a static argument under jit
        object.__setattr__(
            self, "slab_precision", tuple(tuple(map(float, row)) for row in precision)
        )

    # Layout

    @property
    @override
    def fst_man(self) -> Block:
        """Weight block, stored as (hidden, pool, visible)."""
        return Block((self.n_hidden, self.pool_size, self.n_visible))

    @property
    @override
    def snd_man(self) -> Block:
        """Spike bias block."""
        return Block((self.n_hidden,))

    @property
    @override
    def trd_man(self) -> Block:
        """Visible precision block."""
        return Block((self.n_visible,))

    @property
    def hidden_dim(self) -> int:
        """Length of a flat hidden configuration: H spikes followed by P*H slabs."""
        return self.n_hidden + self.pool_size * self.n_hidden

    @property
    def slab_precision_matrix(self) -> Array:
        """Slab precisions as a (P, H) array."""
        return jnp.asarray(self.slab_precision)

    def reset(self, params: Array) -> SpikeSlabParams:
        """Derive the weight, spike bias and visible precision views of a parameter array.

        Args:
            params: Flat parameter array of length ``dim``

        Returns:
            Structured views of the parameters

        Raises:
            ValueError: If ``params`` does not have length ``dim``
        """
        weight_coords, spike_bias, visible_precision = self.split_coords(params)
        weights = jnp.swapaxes(self.fst_man.to_tensor(weight_coords), 1, 2)
        return SpikeSlabParams(weights, spike_bias, visible_precision)

    def join_params(
        self, weights: Array, spike_bias: Array, visible_precision: Array
    ) -> Array:
        """Pack structured parameters into a flat array (inverse of `reset`).

        Args:
            weights: Array of shape (n_hidden, n_visible, pool_size)
            spike_bias: Array of shape (n_hidden,)
            visible_precision: Array of shape (n_visible,)

        Returns:
            Flat parameter array
        """
        return self.join_coords(
            self.fst_man.from_tensor(jnp.swapaxes(weights, 1, 2)),
            self.snd_man.from_tensor(spike_bias),
            self.trd_man.from_tensor(visible_precision),
        )

    def split_hidden(self, hidden: Array) -> tuple[Array, Array]:
        """Split a flat hidden configuration into spikes (H,) and slabs (P, H)."""
        self._check_shape(hidden, (self.hidden_dim,), "hidden")
        spike = hidden[: self.n_hidden]
        slab = hidden[self.n_hidden :].reshape(self.n_hidden, self.pool_size).T
        return spike, slab

    def join_hidden(self, spike: Array, slab: Array) -> Array:
        """Join spikes (H,) and slabs (P, H) into a flat hidden configuration."""
        self._check_shape(spike, (self.n_hidden,), "spike")
        self._check_shape(slab, (self.pool_size, self.n_hidden), "slab")
        return jnp.concatenate([spike, slab.T.ravel()])

    # Initialization and validation

    def initialize(self, key: Array, shape: float = 0.1) -> Array:
        """Initialize parameters with small random weights, zero spike biases and unit visible precision."""
        scaling = shape / jnp.sqrt(self.n_visible * self.pool_size)
        weights = scaling * jax.random.normal(
            key, (self.n_hidden, self.n_visible, self.pool_size)
        )
        return self.join_params(
            weights, jnp.zeros(self.n_hidden), jnp.ones(self.n_visible)
        )

    def validate_params(self, params: Array) -> None:
        """Eagerly check that a parameter array is usable.

        Raises:
            ValueError: If the array has the wrong length, non-finite entries, or a non-positive visible precision
        """
        _, _, visible_precision = self.reset(params)
        if not bool(jnp.all(jnp.isfinite(params))):
            raise ValueError("Parameters contain non-finite values")
        if not bool(jnp.all(visible_precision > 0)):
            raise ValueError("Visible precision must be strictly positive")

    # Energy

    def free_energy(self, params: Array, visible: Array) -> Array:
        """Free energy of a visible configuration with the slab integrated out.

        Args:
            params: Model parameters
            visible: Visible configuration (shape: n_visible)

        Returns:
            Free energy (scalar)
        """
        self._check_shape(visible, (self.n_visible,), "visible")
        _, spike_bias, visible_precision = self.reset(params)
        alpha = self.slab_precision_matrix.T
        proj = self._projections(params, visible)

        quadratic = 0.5 * jnp.sum(visible_precision * visible**2)
        normalizer = 0.5 * jnp.sum(jnp.log(2.0 * jnp.pi / alpha))
        gate = spike_bias + jnp.sum(proj**2 / (2.0 * alpha), axis=1)
        return quadratic - normalizer - jnp.sum(jax.nn.softplus(gate))

    def mean_free_energy(self, params: Array, xs: Array) -> Array:
        """Mean free energy over a batch of visible configurations (shape: n_samples, n_visible)."""
        return jnp.mean(jax.vmap(self.free_energy, in_axes=(None, 0))(params, xs))

    # Conditional means

    def spike_mean(self, params: Array, visible: Array) -> Array:
        """Probability that each spike is active given the visible layer, with the slab marginalized.

        Args:
            params: Model parameters
            visible: Visible configuration (shape: n_visible)

        Returns:
            Spike probabilities (shape: n_hidden)
        """
        self._check_shape(visible, (self.n_visible,), "visible")
        _, spike_bias, _ = self.reset(params)
        alpha = self.slab_precision_matrix.T
        proj = self._projections(params, visible)
        return jax.nn.sigmoid(0.5 * jnp.sum(proj**2 / alpha, axis=1) + spike_bias)

    def slab_mean(self, params: Array, visible: Array, spike: Array) -> Array:
        """Mean of the slab given the visible layer and spike values.

        Column ``i`` is ``spike[i] * diag(alpha_i)^-1 W_i^T v``, so it vanishes whenever ``spike[i]`` is zero.

        Args:
            params: Model parameters
            visible: Visible configuration (shape: n_visible)
            spike: Spike values (shape: n_hidden)

        Returns:
            Slab means (shape: pool_size, n_hidden)
        """
        self._check_shape(visible, (self.n_visible,), "visible")
        self._check_shape(spike, (self.n_hidden,), "spike")
        alpha = self.slab_precision_matrix.T
        proj = self._projections(params, visible)
        return (spike[:, None] * proj / alpha).T

    def visible_mean(self, params: Array, hidden: Array) -> Array:
        """Mean of the visible layer given a flat hidden configuration.

        Args:
            params: Model parameters
            hidden: Spikes followed by slabs (shape: hidden_dim)

        Returns:
            Visible means (shape: n_visible)
        """
        spike, slab = self.split_hidden(hidden)
        weights, _, visible_precision = self.reset(params)
        drive = jnp.einsum("hvp,ph,h->v", weights, slab, spike)
        return drive / visible_precision

    def hidden_mean(self, key: Array, params: Array, visible: Array) -> Array:
        """Spike means together with slab means conditioned on a *sampled* spike.

        This mixes expectations with a stochastic draw: the spike part of the result is the spike probability, but the slab part is computed from a Bernoulli sample of those probabilities. Use `expected_hidden` for fully deterministic expectations.

        Returns:
            Flat hidden vector (shape: hidden_dim)
        """
        spike_probs = self.spike_mean(params, visible)
        spike = self.sample_spike(key, spike_probs)
        slab = self.slab_mean(params, visible, spike)
        return self.join_hidden(spike_probs, slab)

    def expected_hidden(self, params: Array, visible: Array) -> Array:
        """Expected spikes and expected slabs given the visible layer.

        The expected slab of unit ``i`` is ``p(h_i = 1 | v) * diag(alpha_i)^-1 W_i^T v``.
        """
        spike_probs = self.spike_mean(params, visible)
        slab = self.slab_mean(params, visible, spike_probs)
        return self.join_hidden(spike_probs, slab)

    def reconstruct(self, params: Array, visible: Array) -> Array:
        """Deterministic reconstruction E[v | E[h | v]]."""
        return self.visible_mean(params, self.expected_hidden(params, visible))

    def reconstruction_error(self, params: Array, xs: Array) -> Array:
        """Mean squared reconstruction error over a batch."""
        recons = jax.vmap(self.reconstruct, in_axes=(None, 0))(params, xs)
        return jnp.mean((xs - recons) ** 2)

    # Sampling

    def sample_spike(self, key: Array, spike_mean: Array) -> Array:
        """Independent Bernoulli draw for each spike."""
        self._check_shape(spike_mean, (self.n_hidden,), "spike_mean")
        return jax.random.bernoulli(key, spike_mean).astype(spike_mean.dtype)

    def sample_slab(self, key: Array, slab_mean: Array) -> Array:
        """Independent Gaussian draw for each slab with variance ``1 / slab_precision``."""
        self._check_shape(slab_mean, (self.pool_size, self.n_hidden), "slab_mean")
        noise = jax.random.normal(key, slab_mean.shape, dtype=slab_mean.dtype)
        return slab_mean + noise / jnp.sqrt(self.slab_precision_matrix)

    @override
    def sample_visible(self, key: Array, params: Array, hidden: Array) -> VisibleSample:
        """Draw the visible layer, retrying up to `MAX_VISIBLE_TRIALS` times to land inside ``radius``.

        Every trial draws afresh from N(visible_mean, 1 / visible_precision) and the loop stops at the first draw whose norm is below ``radius``. If no trial succeeds, the last draw is returned with ``accepted`` false.

        Args:
            key: JAX random key
            params: Model parameters
            hidden: Flat hidden configuration (shape: hidden_dim)

        Returns:
            The draw, whether it satisfies the radius bound, and how many draws were made
        """
        mean = self.visible_mean(params, hidden)
        _, _, visible_precision = self.reset(params)
        std = 1.0 / jnp.sqrt(visible_precision)

        def not_done(state: tuple[Array, Array, Array, Array]) -> Array:
            _, _, accepted, n_draws = state
            return jnp.logical_and(~accepted, n_draws < MAX_VISIBLE_TRIALS)

        def draw(
            state: tuple[Array, Array, Array, Array],
        ) -> tuple[Array, Array, Array, Array]:
            loop_key, _, _, n_draws = state
            loop_key, draw_key = jax.random.split(loop_key)
            sample = mean + std * jax.random.normal(draw_key, mean.shape, mean.dtype)
            return loop_key, sample, jnp.linalg.norm(sample) < self.radius, n_draws + 1

        init = (key, jnp.zeros_like(mean), jnp.array(False), jnp.array(0))
        _, sample, accepted, n_draws = jax.lax.while_loop(not_done, draw, init)
        return VisibleSample(sample, accepted, n_draws)

    @override
    def sample_hidden(self, key: Array, params: Array, visible: Array) -> Array:
        """Full stochastic hidden draw: spikes, then slabs given those spikes.

        Returns:
            Flat hidden vector (shape: hidden_dim)
        """
        spike_key, slab_key = jax.random.split(key)
        spike = self.sample_spike(spike_key, self.spike_mean(params, visible))
        slab = self.sample_slab(slab_key, self.slab_mean(params, visible, spike))
        return self.join_hidden(spike, slab)

    def acceptance_rate(self, key: Array, params: Array, xs: Array) -> Array:
        """Fraction of one-step visible draws that land inside ``radius``, starting from a batch."""

        def accepted(point_key: Array, x: Array) -> Array:
            hid_key, vis_key = jax.random.split(point_key)
            hidden = self.sample_hidden(hid_key, params, x)
            return self.sample_visible(vis_key, params, hidden).accepted

        keys = jax.random.split(key, xs.shape[0])
        return jnp.mean(jax.vmap(accepted)(keys, xs).astype(jnp.float32))

    # Gradient statistics

    @override
    def positive_phase(self, key: Array, params: Array, visible: Array) -> Array:
        """Data-driven statistics for contrastive divergence, in parameter layout."""
        return self._phase_statistics(key, params, visible)

    @override
    def negative_phase(self, key: Array, params: Array, visible: Array) -> Array:
        """Model-sample-driven statistics for contrastive divergence, in parameter layout."""
        return self._phase_statistics(key, params, visible)

    # Persistence

    def to_dict(self, params: Array) -> dict[str, Any]:
        """Hyperparameters and parameters as plain JSON-compatible values."""
        self.check_coords(params)
        return {
            "n_visible": self.n_visible,
            "n_hidden": self.n_hidden,
            "pool_size": self.pool_size,
            "slab_precision": [list(row) for row in self.slab_precision],
            "radius": self.radius,
            "parameters": np.asarray(params, dtype=np.float64).tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> tuple[SpikeSlabRBM, Array]:
        """Rebuild a model and its parameters from `to_dict` output."""
        required = (
            "n_visible",
            "n_hidden",
            "pool_size",
            "slab_precision",
            "radius",
            "parameters",
        )
        missing = [name for name in required if name not in data]
        if missing:
            raise ValueError(f"Model document is missing keys: {missing}")
        model = spike_slab_rbm(
            int(data["n_visible"]),
            int(data["n_hidden"]),
            int(data["pool_size"]),
            data["slab_precision"],
            float(data["radius"]),
        )
        params = jnp.asarray(data["parameters"])
        model.validate_params(params)
        return model, params

    # Internals

    def _phase_statistics(self, key: Array, params: Array, visible: Array) -> Array:
        self._check_shape(visible, (self.n_visible,), "visible")
        spike_probs = self.spike_mean(params, visible)
        spike = self.sample_spike(key, spike_probs)
        slab = self.slab_mean(params, visible, spike)

        # Units whose gate did not fire contribute no weight statistics
        weight_stats = jnp.einsum("v,ph,h->hvp", visible, slab, spike)
        return self.join_params(weight_stats, spike_probs, -0.5 * visible**2)

    def _projections(self, params: Array, visible: Array) -> Array:
        """Projections ``v^T W_i[:, k]`` as an (H, P) array."""
        weights, _, _ = self.reset(params)
        return jnp.einsum("hvp,v->hp", weights, visible)

    @staticmethod
    def _check_shape(array: Array, shape: tuple[int, ...], name: str) -> None:
        if tuple(array.shape) != shape:
            raise ValueError(f"{name} must have shape {shape}, got {tuple(array.shape)}")


def spike_slab_rbm(
    n_visible: int,
    n_hidden: int,
    pool_size: int,
    slab_precision: Any,
    radius: float,
) -> SpikeSlabRBM:
    """Create a spike-and-slab RBM.

    Args:
        n_visible: Number of visible units
        n_hidden: Number of hidden units
        pool_size: Number of slab variables per hidden unit
        slab_precision: Array-like of shape (pool_size, n_hidden), strictly positive
        radius: Norm bound on accepted visible samples

    Returns:
        SpikeSlabRBM instance
    """
    return SpikeSlabRBM(
        n_visible=n_visible,
        n_hidden=n_hidden,
        pool_size=pool_size,
        slab_precision=slab_precision,
        radius=radius,
    )
