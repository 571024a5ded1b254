"""Re-identification risk: uniqueness of QI tuples and linkage back to the source."""

import warnings
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .schema import qi_groups, shared_qi_groups


@dataclass(frozen=True)
class ReidentificationRisk:
    n_rows: int
    n_classes: int
    uniqueness_rate: float
    final_k: int
    population_size: Optional[int]
    sampling_fraction: float
    extrapolated_k: float
    max_risk: float
    average_risk: float
    linkage: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'n_rows': self.n_rows,
            'n_classes': self.n_classes,
            'uniqueness_rate': self.uniqueness_rate,
            'final_k': self.final_k,
            'population_size': self.population_size,
            'sampling_fraction': self.sampling_fraction,
            'extrapolated_k': self.extrapolated_k,
            'max_risk': self.max_risk,
            'average_risk': self.average_risk,
            'linkage': dict(self.linkage),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReidentificationRisk":
        return cls(
            n_rows=int(data.get('n_rows', 0)),
            n_classes=int(data.get('n_classes', 0)),
            uniqueness_rate=float(data.get('uniqueness_rate', 0.0)),
            final_k=int(data.get('final_k', 0)),
            population_size=data.get('population_size'),
            sampling_fraction=float(data.get('sampling_fraction', 1.0)),
            extrapolated_k=float(data.get('extrapolated_k', 0.0)),
            max_risk=float(data.get('max_risk', 0.0)),
            average_risk=float(data.get('average_risk', 0.0)),
            linkage=dict(data.get('linkage', {})),
        )


def compute_reidentification_risk(
    released: pd.DataFrame,
    quasi_identifiers: Sequence[str],
    population_size: Optional[int] = None,
    original: Optional[pd.DataFrame] = None,
    k: int = 5,
) -> ReidentificationRisk:
    """Summarize how identifiable the released rows are.

    Uniqueness rate is the share of released rows whose QI tuple appears once.
    With a population size N the smallest class is scaled by N / n to estimate
    how many people in the population share it (extrapolated k); max risk is
    1 / extrapolated k and average risk is the mean of 1 / (scaled class size).
    Passing the source table adds the QI linkage figures.
    """
    n = len(released)
    if population_size is not None and population_size < n:
        warnings.warn(
            f"population_size={population_size} is smaller than the release ({n} rows); using {n}",
            stacklevel=2,
        )
        population_size = n
    fraction = float(n / population_size) if population_size else 1.0

    if n == 0:
        return ReidentificationRisk(
            n_rows=0, n_classes=0, uniqueness_rate=0.0, final_k=0,
            population_size=population_size, sampling_fraction=fraction,
            extrapolated_k=0.0, max_risk=0.0, average_risk=0.0,
            linkage={},
        )

    keys = qi_groups(released, quasi_identifiers)
    counts = keys.value_counts()
    sizes = keys.map(counts).to_numpy(dtype=float)
    final_k = int(counts.min())
    scaled = sizes / fraction if fraction > 0 else sizes

    linkage: Dict[str, Any] = {}
    if original is not None and quasi_identifiers:
        linkage = compute_qi_linkage_risk(original, released, quasi_identifiers, k=k)

    return ReidentificationRisk(
        n_rows=n,
        n_classes=int(len(counts)),
        uniqueness_rate=float(np.mean(sizes == 1)),
        final_k=final_k,
        population_size=population_size,
        sampling_fraction=fraction,
        extrapolated_k=float(final_k / fraction) if fraction > 0 else float(final_k),
        max_risk=float(1.0 / scaled.min()),
        average_risk=float(np.mean(1.0 / scaled)),
        linkage=linkage,
    )


def compute_qi_linkage_risk(
    real_data: pd.DataFrame,
    synthetic_data: pd.DataFrame,
    qi_columns: Sequence[str],
    k: int = 5,
) -> Dict[str, Any]:
    """Check how easy it is to link released records back to source records.

    Compares QI combinations of the two tables. Only columns present in both
    are used; a released combination that appears at most k times in the source
    counts as a k-anonymity violation.
    """
    qi_columns = [col for col in qi_columns if col in real_data.columns and col in synthetic_data.columns]
    if not qi_columns:
        return {'warning': "No valid QI columns found in both datasets."}

    real_qi, synth_qi = shared_qi_groups(real_data, synthetic_data, qi_columns)

    real_qi_counts = Counter(real_qi)
    synth_qi_counts = Counter(synth_qi)
    unique_real_qi = set(real_qi_counts.keys())
    unique_synth_qi = set(synth_qi_counts.keys())

    # 1. Exact QI matches (released combinations that exist in the source)
    exact_qi_matches = len(unique_real_qi & unique_synth_qi)

    # 2. Released combinations that are rare in the source
    k_anon_violations = sum(1 for combo in unique_synth_qi if real_qi_counts.get(combo, 0) <= k)

    # 3. Rare-but-present combinations are the linkable ones
    linkage_risky = sum(1 for combo in unique_synth_qi if 0 < real_qi_counts.get(combo, 0) <= k)

    denom = max(len(unique_synth_qi), 1)
    return {
        'qi_columns': qi_columns,
        'unique_real_qi_combinations': len(unique_real_qi),
        'unique_synth_qi_combinations': len(unique_synth_qi),
        'n_exact_qi_matches': exact_qi_matches,
        'exact_qi_match_rate': exact_qi_matches / denom,
        'k_parameter': k,
        'k_anonymity_violations': k_anon_violations,
        'k_anonymity_violation_rate': k_anon_violations / denom,
        'n_linkage_risky_combinations': linkage_risky,
        'linkage_risk_rate': linkage_risky / denom,
    }


def print_risk_report(risk: ReidentificationRisk) -> None:
    """Print formatted re-identification risk report."""
    print("=" * 80)
    print("Re-identification Risk Report")
    print("=" * 80)

    print(f"\nReleased rows: {risk.n_rows:,} in {risk.n_classes:,} equivalence classes")
    print(f"  Uniqueness rate: {risk.uniqueness_rate:.4f}")
    print(f"  Smallest class (k): {risk.final_k}")
    if risk.population_size:
        print(f"  Population size: {risk.population_size:,} (sampling fraction {risk.sampling_fraction:.4f})")
        print(f"  Extrapolated k: {risk.extrapolated_k:.1f}")
    print(f"  Max re-identification risk: {risk.max_risk:.4f}")
    print(f"  Average re-identification risk: {risk.average_risk:.4f}")

    linkage = risk.linkage
    if linkage.get('warning'):
        print(f"\nWarning: {linkage['warning']}")
    elif linkage:
        print(f"\nQI Linkage (k={linkage['k_parameter']}):")
        print(f"  Exact QI match rate: {linkage['exact_qi_match_rate']:.4f}")
        print(f"  K-anonymity violation rate: {linkage['k_anonymity_violation_rate']:.4f}")
        print(f"  Linkage risk rate: {linkage['linkage_risk_rate']:.4f}")
        print(f"    (Lower is better - indicates lower linkage attack risk)")

    print("\n" + "=" * 80)
