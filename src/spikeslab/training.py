"""Minibatch contrastive-divergence training for Gibbs-sampled harmoniums.

The loop itself is generic; the model supplies the phase statistics and samplers, and an optax optimizer consumes the resulting descent gradient.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

import jax
from jax import Array

from .geometry.manifold.optimizer import Optimizer, OptState
from .models.spike_slab import SpikeSlabRBM

logger = logging.getLogger(__name__)

OptimizerName = Literal["sgd", "nesterov", "adamw"]


@dataclass(frozen=True)
class TrainingConfig:
    """Hyperparameters of the training loop."""

    learning_rate: float = 0.01
    """Optimizer step size."""
    batch_size: int = 32
    """Number of data points per update."""
    n_epochs: int = 10
    """Number of passes over the data."""
    cd_steps: int = 1
    """Gibbs alternations per contrastive-divergence gradient (the k in CD-k)."""
    optimizer: OptimizerName = "sgd"
    """Update rule applied to the gradient."""
    momentum: float = 0.0
    """Momentum for ``sgd``; ``nesterov`` uses 0.7 when this is zero."""
    precision_floor: float = 1e-3
    """Visible precisions are clamped to at least this value after every update."""
    grad_clip: float | None = None
    """Global-norm gradient clipping threshold, or None to disable."""
    monitor_size: int = 256
    """Number of data points used for per-epoch metrics."""

    def __post_init__(self) -> None:
        if self.batch_size < 1 or self.n_epochs < 0 or self.cd_steps < 1:
            raise ValueError(
                f"Invalid loop sizes: batch_size={self.batch_size}, n_epochs={self.n_epochs}, cd_steps={self.cd_steps}"
            )
        if not self.precision_floor > 0:
            raise ValueError(
                f"precision_floor must be positive, got {self.precision_floor}"
            )


@dataclass
class TrainingHistory:
    """Per-epoch monitoring metrics."""

    free_energies: list[float] = field(default_factory=list)
    reconstruction_errors: list[float] = field(default_factory=list)
    acceptance_rates: list[float] = field(default_factory=list)


def make_optimizer(
    model: SpikeSlabRBM, config: TrainingConfig
) -> Optimizer[SpikeSlabRBM]:
    """Build the optimizer named in the configuration."""
    match config.optimizer:
        case "sgd":
            optimizer = Optimizer.sgd(model, config.learning_rate, config.momentum)
        case "nesterov":
            optimizer = Optimizer.nesterov(
                model, config.learning_rate, config.momentum or 0.7
            )
        case "adamw":
            optimizer = Optimizer.adamw(model, config.learning_rate)
        case other:
            raise ValueError(f"Unknown optimizer {other!r}")
    if config.grad_clip is not None:
        optimizer = optimizer.with_grad_clip(config.grad_clip)
    return optimizer


def clamp_visible_precision(model: SpikeSlabRBM, params: Array, floor: float) -> Array:
    """Raise every visible precision below ``floor`` to ``floor``."""
    start, stop = model.offsets[2]
    return params.at[start:stop].max(floor)


def train(
    key: Array,
    model: SpikeSlabRBM,
    params: Array,
    data: Array,
    config: TrainingConfig,
) -> tuple[Array, TrainingHistory]:
    """Fit a model to data with minibatch CD-k.

    Args:
        key: JAX random key
        model: Model to train
        params: Initial parameters
        data: Training data (shape: n_samples, n_visible)
        config: Loop hyperparameters

    Returns:
        Trained parameters and the monitoring history
    """
    if data.ndim != 2 or data.shape[1] != model.n_visible:
        raise ValueError(
            f"data must have shape (n_samples, {model.n_visible}), got {data.shape}"
        )
    n_samples = data.shape[0]
    n_batches = n_samples // config.batch_size
    if n_batches == 0:
        raise ValueError(
            f"Need at least batch_size={config.batch_size} samples, got {n_samples}"
        )
    model.validate_params(params)

    optimizer = make_optimizer(model, config)
    opt_state = optimizer.init(params)
    monitor = data[: config.monitor_size]

    def update_step(
        carry: tuple[Array, OptState], inputs: tuple[Array, Array]
    ) -> tuple[tuple[Array, OptState], None]:
        p, opt_s = carry
        batch_key, batch = inputs
        grad = model.mean_contrastive_divergence_gradient(
            batch_key, p, batch, k=config.cd_steps
        )
        opt_s, p = optimizer.update(opt_s, grad, p)
        return (clamp_visible_precision(model, p, config.precision_floor), opt_s), None

    @jax.jit
    def run_epoch(
        epoch_key: Array, p: Array, opt_s: OptState
    ) -> tuple[Array, OptState]:
        shuffle_key, batches_key = jax.random.split(epoch_key)
        perm = jax.random.permutation(shuffle_key, n_samples)
        batches = data[perm][: n_batches * config.batch_size].reshape(
            n_batches, config.batch_size, -1
        )
        batch_keys = jax.random.split(batches_key, n_batches)
        (p, opt_s), _ = jax.lax.scan(update_step, (p, opt_s), (batch_keys, batches))
        return p, opt_s

    @jax.jit
    def compute_metrics(metric_key: Array, p: Array) -> tuple[Array, Array, Array]:
        return (
            model.mean_free_energy(p, monitor),
            model.reconstruction_error(p, monitor),
            model.acceptance_rate(metric_key, p, monitor),
        )

    history = TrainingHistory()
    logger.info(
        "Training %d-%d-%d ssRBM on %d samples: %d epochs, CD-%d, %s",
        model.n_visible,
        model.n_hidden,
        model.pool_size,
        n_samples,
        config.n_epochs,
        config.cd_steps,
        config.optimizer,
    )

    for epoch in range(config.n_epochs):
        key, epoch_key, metric_key = jax.random.split(key, 3)
        params, opt_state = run_epoch(epoch_key, params, opt_state)

        free_energy, recon, acceptance = compute_metrics(metric_key, params)
        history.free_energies.append(float(free_energy))
        history.reconstruction_errors.append(float(recon))
        history.acceptance_rates.append(float(acceptance))

        logger.info(
            "Epoch %d/%d: FE=%.4f, Recon=%.4f, Accept=%.2f",
            epoch + 1,
            config.n_epochs,
            float(free_energy),
            float(recon),
            float(acceptance),
        )
        if float(acceptance) < 0.5:
            logger.warning(
                "Only %.0f%% of visible draws fell inside radius %.3g",
                100 * float(acceptance),
                model.radius,
            )

    return params, history
