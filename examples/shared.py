"""Shared utilities for spikeslab examples."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jax


@dataclass(frozen=True)
class ExamplePaths:
    """Manages paths for example outputs."""

    example_name: str
    results_dir: Path

    @property
    def analysis_path(self) -> Path:
        return self.results_dir / "analysis.json"

    @property
    def model_path(self) -> Path:
        return self.results_dir / "model.json"

    def save_analysis(self, results: Any) -> None:
        self.results_dir.mkdir(parents=True, exist_ok=True)
        with open(self.analysis_path, "w") as f:
            json.dump(results, f, indent=2)


def example_paths(module_path: str | Path) -> ExamplePaths:
    """Create ExamplePaths from a module's __file__."""
    module_path = Path(module_path)
    example_name = module_path.parent.name
    project_root = module_path.parents[2]
    return ExamplePaths(
        example_name=example_name,
        results_dir=project_root / "results" / example_name,
    )


def initialize_jax(device: str = "cpu", disable_jit: bool = False) -> None:
    """Initialize JAX configuration and library logging."""
    jax.config.update("jax_platform_name", device)
    if disable_jit:
        jax.config.update("jax_disable_jit", True)
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
