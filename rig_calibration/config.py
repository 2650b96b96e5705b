"""
Solver configuration.

Engine settings shared by the hand-eye and multi-camera solvers, loadable
from YAML.
"""

import logging
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Dict, Any

import yaml

from .exceptions import InvalidConfigurationError

logger = logging.getLogger(__name__)

INITIALIZATION_METHODS = ('auto', 'planar_homography', 'epnp')


@dataclass(frozen=True)
class SolverConfig:
    """Configuration for the calibration and refinement solvers."""
    # Hand-eye: pair every sample with every later one instead of only the next
    use_all_pairs: bool = False

    # Multi-camera refinement
    max_iterations: int = 10
    tolerance: float = 1e-6
    min_correspondences: int = 4
    min_bootstrap_points: int = 4
    initialization: str = 'auto'

    def __post_init__(self):
        if self.max_iterations < 1:
            raise InvalidConfigurationError('max_iterations', self.max_iterations)
        if not self.tolerance > 0:
            raise InvalidConfigurationError('tolerance', self.tolerance)
        if self.min_correspondences < 0:
            raise InvalidConfigurationError('min_correspondences', self.min_correspondences)
        if self.min_bootstrap_points < 4:
            raise InvalidConfigurationError('min_bootstrap_points', self.min_bootstrap_points,
                                            "At least 4 points are needed for the bootstrap")
        if self.initialization not in INITIALIZATION_METHODS:
            raise InvalidConfigurationError('initialization', self.initialization)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def save(self, filepath: str):
        """Write the configuration to YAML under a 'solver' key."""
        with open(filepath, 'w') as f:
            yaml.dump({'solver': self.to_dict()}, f, default_flow_style=False)
        logger.info(f"Config saved to {filepath}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'SolverConfig':
        """Create from a dict, ignoring unknown keys."""
        if 'solver' in d and isinstance(d['solver'], dict):
            d = d['solver']
        known = {f.name for f in fields(cls)}
        unknown = set(d) - known
        if unknown:
            logger.warning(f"Ignoring unknown solver config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in d.items() if k in known})


def load_solver_config(filepath: str) -> SolverConfig:
    """
    Load solver configuration from a YAML file.

    A missing or empty file yields the defaults.
    """
    path = Path(filepath)

    if not path.exists():
        logger.warning(f"Config file not found: {filepath}, using defaults")
        return SolverConfig()

    with open(path, 'r') as f:
        config_dict = yaml.safe_load(f)

    if not config_dict:
        return SolverConfig()

    return SolverConfig.from_dict(config_dict)
