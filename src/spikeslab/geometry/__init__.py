from .harmonium import GibbsHarmonium, VisibleSample
from .manifold.base import Manifold
from .manifold.combinators import Block, Triple
from .manifold.optimizer import Optimizer, OptState
from .manifold.util import batched_mean

__all__ = [
    "Block",
    "GibbsHarmonium",
    "Manifold",
    "OptState",
    "Optimizer",
    "Triple",
    "VisibleSample",
    "batched_mean",
]
