"""Train a spike-and-slab RBM on synthetic sparse Gaussian data.

Each data point is a noisy, randomly scaled copy of one of a few prototype directions, so only a handful of hidden units should gate on for any given point. The example:

1. Generates the data
2. Trains an ssRBM with CD-k and Nesterov momentum
3. Draws samples from Gibbs chains started at data points
4. Saves the model and a JSON summary of the run
"""

import jax
import jax.numpy as jnp
from jax import Array

from spikeslab.io import save_model
from spikeslab.models import spike_slab_rbm
from spikeslab.training import TrainingConfig, train

from ..shared import example_paths, initialize_jax
from .types import SpikeSlabResults

# Configuration
N_VISIBLE = 16
N_HIDDEN = 8
POOL_SIZE = 2
N_PROTOTYPES = 4
N_SAMPLES = 2048
NOISE_STD = 0.2
SLAB_PRECISION = 1.0
RADIUS = 3.0 * jnp.sqrt(N_VISIBLE)

CONFIG = TrainingConfig(
    learning_rate=0.005,
    batch_size=64,
    n_epochs=30,
    cd_steps=1,
    optimizer="nesterov",
    grad_clip=10.0,
)

N_CHAIN_STEPS = 50
N_GENERATED = 10


def generate_data(key: Array) -> Array:
    """Sample noisy scaled prototypes."""
    proto_key, pick_key, scale_key, noise_key = jax.random.split(key, 4)
    prototypes = jax.random.normal(proto_key, (N_PROTOTYPES, N_VISIBLE))
    prototypes = prototypes / jnp.linalg.norm(prototypes, axis=1, keepdims=True)
    picks = jax.random.randint(pick_key, (N_SAMPLES,), 0, N_PROTOTYPES)
    scales = jax.random.uniform(scale_key, (N_SAMPLES, 1), minval=1.0, maxval=3.0)
    noise = NOISE_STD * jax.random.normal(noise_key, (N_SAMPLES, N_VISIBLE))
    return scales * prototypes[picks] + noise


def main():
    initialize_jax("cpu")
    paths = example_paths(__file__)
    key = jax.random.PRNGKey(0)

    key, data_key = jax.random.split(key)
    data = generate_data(data_key)
    print(f"Generated {data.shape[0]} samples, shape: {data.shape}")

    model = spike_slab_rbm(
        N_VISIBLE,
        N_HIDDEN,
        POOL_SIZE,
        jnp.full((POOL_SIZE, N_HIDDEN), SLAB_PRECISION),
        float(RADIUS),
    )
    print(
        f"\nCreating ssRBM: {N_VISIBLE} visible, {N_HIDDEN} hidden units, pools of {POOL_SIZE}"
    )

    key, init_key, train_key = jax.random.split(key, 3)
    params = model.initialize(init_key)
    params, history = train(train_key, model, params, data, CONFIG)

    spike_activations = jnp.mean(
        jax.vmap(model.spike_mean, in_axes=(None, 0))(params, data), axis=0
    )

    key, chain_key = jax.random.split(key)
    chain_keys = jax.random.split(chain_key, N_GENERATED)

    def run_chain(step_key: Array, start: Array) -> Array:
        return model.gibbs_chain(step_key, params, start, N_CHAIN_STEPS)

    generated = jax.vmap(run_chain)(chain_keys, data[:N_GENERATED])

    print(f"\nFinal free energy: {history.free_energies[-1]:.4f}")
    print(f"Final reconstruction error: {history.reconstruction_errors[-1]:.4f}")
    print(f"Final acceptance rate: {history.acceptance_rates[-1]:.2f}")

    save_model(paths.model_path, model, params)
    results = SpikeSlabResults(
        free_energies=history.free_energies,
        reconstruction_errors=history.reconstruction_errors,
        acceptance_rates=history.acceptance_rates,
        spike_activations=spike_activations.tolist(),
        generated_samples=generated.tolist(),
    )
    paths.save_analysis(results)
    print(f"\nResults saved to {paths.analysis_path}")


if __name__ == "__main__":
    main()
