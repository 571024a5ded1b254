"""Certification settings and JSON loading."""

import json
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Tuple

from .inference import DEFAULT_THRESHOLD


@dataclass(frozen=True)
class CertificationConfig:
    """Everything ``generate_certificate`` needs besides the two tables.

    ``dataset_id`` switches on budget accounting: when set, ``epsilon`` is
    consumed from that dataset's ledger before the certificate is assembled.
    ``anonymous_epsilon`` and ``deidentified_k`` are the compliance cut-offs.
    """

    epsilon: float = 1.0
    delta: float = 1e-6
    target_k: int = 5
    population_size: Optional[int] = None
    quasi_identifiers: Tuple[str, ...] = ()
    sensitive_columns: Optional[Tuple[str, ...]] = None
    dataset_id: Optional[str] = None
    actor: str = "unknown"
    operation_label: str = "certificate"
    attack_threshold: float = DEFAULT_THRESHOLD
    seed: int = 0
    apply_enforcement: bool = True
    anonymous_epsilon: float = 1.0
    deidentified_k: int = 5

    def __post_init__(self):
        # Lists from JSON become tuples so the config stays hashable
        object.__setattr__(self, 'quasi_identifiers', tuple(self.quasi_identifiers))
        if self.sensitive_columns is not None:
            object.__setattr__(self, 'sensitive_columns', tuple(self.sensitive_columns))

        if self.epsilon <= 0:
            raise ValueError("epsilon must be > 0")
        if not (0 < self.delta < 1):
            raise ValueError("delta must be in (0, 1)")
        if self.target_k < 1:
            raise ValueError("target_k must be >= 1")
        if self.population_size is not None and self.population_size < 1:
            raise ValueError("population_size must be >= 1")
        if not (0.5 <= self.attack_threshold <= 1):
            raise ValueError("attack_threshold must be in [0.5, 1]")
        if self.anonymous_epsilon <= 0:
            raise ValueError("anonymous_epsilon must be > 0")
        if self.deidentified_k < 1:
            raise ValueError("deidentified_k must be >= 1")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificationConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**data)

    @classmethod
    def from_json(cls, text: str) -> "CertificationConfig":
        return cls.from_dict(json.loads(text))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['quasi_identifiers'] = list(self.quasi_identifiers)
        if self.sensitive_columns is not None:
            data['sensitive_columns'] = list(self.sensitive_columns)
        return data


def load_config(config_file: str) -> CertificationConfig:
    """Load configuration from JSON file."""
    with open(config_file, 'r') as f:
        return CertificationConfig.from_dict(json.load(f))
