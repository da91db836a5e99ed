"""Type definitions for the ssRBM contrastive-divergence example."""

from typing import TypedDict


class SpikeSlabResults(TypedDict):
    """Results from training an ssRBM on synthetic sparse data."""

    # Training metrics
    free_energies: list[float]
    reconstruction_errors: list[float]
    acceptance_rates: list[float]

    # Mean spike activation per hidden unit on the training data
    spike_activations: list[float]

    # Visible samples from a Gibbs chain started at data points
    generated_samples: list[list[float]]  # (n_samples, n_visible)
