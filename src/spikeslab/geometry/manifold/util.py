from __future__ import annotations

from collections.abc import Callable

import jax
import jax.numpy as jnp
from jax import Array


def batched_mean(
    f: Callable[[Array, Array], Array], keys: Array, xs: Array, batch_size: int
) -> Array:
    """Compute the mean of a keyed function over a dataset in a memory-efficient way.

    ``f`` is called as ``f(key, x)`` with one key per data point, so stochastic statistics stay independent across the dataset.
    """
    n_samples = xs.shape[0]

    if n_samples == 0:
        raise ValueError("Cannot compute mean of empty dataset")
    if keys.shape[0] != n_samples:
        raise ValueError(
            f"Expected one key per sample ({n_samples}), got {keys.shape[0]}"
        )
    if n_samples <= batch_size:
        return jnp.mean(jax.vmap(f)(keys, xs), axis=0)

    # Split into complete batches and remainder
    n_complete = (n_samples // batch_size) * batch_size
    xs_batched = xs[:n_complete].reshape(-1, batch_size, *xs.shape[1:])
    keys_batched = keys[:n_complete].reshape(-1, batch_size, *keys.shape[1:])

    def inner_sum(batch: tuple[Array, Array]) -> Array:
        key_batch, x_batch = batch
        return jnp.sum(jax.vmap(f)(key_batch, x_batch), axis=0)

    batch_sums = jnp.sum(jax.lax.map(inner_sum, (keys_batched, xs_batched)), axis=0)

    if n_complete < n_samples:
        total_sum = batch_sums + inner_sum((keys[n_complete:], xs[n_complete:]))
    else:
        total_sum = batch_sums

    return total_sum / n_samples
