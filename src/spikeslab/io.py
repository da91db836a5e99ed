"""Saving and loading trained models as JSON documents.

A document holds the hyperparameters (``n_visible``, ``n_hidden``, ``pool_size``, ``slab_precision``, ``radius``) together with the flat parameter array, so a model can be rebuilt exactly.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from jax import Array

from .models.spike_slab import SpikeSlabRBM

logger = logging.getLogger(__name__)


def save_model(path: str | Path, model: SpikeSlabRBM, params: Array) -> Path:
    """Write a model and its parameters to ``path``, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(model.to_dict(params), f, indent=2)
    logger.info("Saved %d parameters to %s", model.dim, path)
    return path


def load_model(path: str | Path) -> tuple[SpikeSlabRBM, Array]:
    """Read a model written by `save_model`.

    The parameters are validated against the rebuilt model before they are returned.

    Raises:
        ValueError: If the document is incomplete or its parameters do not fit the model
    """
    path = Path(path)
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a model document")
    model, params = SpikeSlabRBM.from_dict(data)
    logger.debug("Loaded %s from %s", model, path)
    return model, params
