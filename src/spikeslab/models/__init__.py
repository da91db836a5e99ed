from .spike_slab import (
    MAX_VISIBLE_TRIALS,
    SpikeSlabParams,
    SpikeSlabRBM,
    spike_slab_rbm,
)

__all__ = [
    "MAX_VISIBLE_TRIALS",
    "SpikeSlabParams",
    "SpikeSlabRBM",
    "spike_slab_rbm",
]
