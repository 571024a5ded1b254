"""Fidelity metrics: how closely a released table tracks the source it came from."""

from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy.spatial.distance import jensenshannon
from scipy.stats import ks_2samp, wasserstein_distance

from .copula import compare_correlations
from .schema import CATEGORICAL, NUMERIC, column_kinds

MISSING_TOKEN = '__MISSING__'


def _binned_jsd(real_col: pd.Series, synth_col: pd.Series) -> float:
    lo = min(real_col.min(), synth_col.min())
    hi = max(real_col.max(), synth_col.max())
    if hi <= lo:
        return 0.0
    n_bins = min(50, max(10, int(np.sqrt(len(real_col)))))
    bins = np.linspace(lo, hi, n_bins + 1)
    real_hist, _ = np.histogram(real_col, bins=bins)
    synth_hist, _ = np.histogram(synth_col, bins=bins)
    return float(jensenshannon(real_hist / real_hist.sum(), synth_hist / synth_hist.sum()))


def _numeric_fidelity(real_col: pd.Series, synth_col: pd.Series) -> Optional[Dict[str, Any]]:
    real_col = pd.to_numeric(real_col, errors='coerce').dropna().astype(float)
    synth_col = pd.to_numeric(synth_col, errors='coerce').dropna().astype(float)
    if len(real_col) == 0 or len(synth_col) == 0:
        return None

    ks_stat, ks_pvalue = ks_2samp(real_col, synth_col)
    return {
        'type': NUMERIC,
        'kolmogorov_smirnov_statistic': float(ks_stat),
        'kolmogorov_smirnov_pvalue': float(ks_pvalue),
        'wasserstein_distance': float(wasserstein_distance(real_col, synth_col)),
        'jensen_shannon_divergence': _binned_jsd(real_col, synth_col),
        'mean_error': float(abs(real_col.mean() - synth_col.mean()) / (abs(real_col.mean()) + 1e-10)),
        'std_error': float(abs(real_col.std() - synth_col.std()) / (abs(real_col.std()) + 1e-10)),
        'real_mean': float(real_col.mean()),
        'synth_mean': float(synth_col.mean()),
        'range_overlap': bool(real_col.min() <= synth_col.max() and synth_col.min() <= real_col.max()),
    }


def _categorical_fidelity(real_col: pd.Series, synth_col: pd.Series) -> Dict[str, Any]:
    real_col = real_col.astype(object).where(real_col.notna(), MISSING_TOKEN).astype(str)
    synth_col = synth_col.astype(object).where(synth_col.notna(), MISSING_TOKEN).astype(str)

    values = sorted(set(real_col.unique()) | set(synth_col.unique()))
    real_counts = real_col.value_counts()
    synth_counts = synth_col.value_counts()
    real_probs = np.array([real_counts.get(v, 0) for v in values], dtype=float)
    synth_probs = np.array([synth_counts.get(v, 0) for v in values], dtype=float)
    real_probs = real_probs / (real_probs.sum() + 1e-10)
    synth_probs = synth_probs / (synth_probs.sum() + 1e-10)

    real_unique = set(real_col.unique())
    synth_unique = set(synth_col.unique())
    return {
        'type': CATEGORICAL,
        'jensen_shannon_divergence': float(jensenshannon(real_probs, synth_probs)),
        'total_variation_distance': float(0.5 * np.sum(np.abs(real_probs - synth_probs))),
        'coverage': len(real_unique & synth_unique) / max(len(real_unique), 1),
        'real_unique_count': len(real_unique),
        'synth_unique_count': len(synth_unique),
    }


def compute_fidelity_metrics(
    real_data: pd.DataFrame,
    synthetic_data: pd.DataFrame,
    columns: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Per-column marginal distances plus latent correlation drift.

    A column is compared as numeric only when it is numeric in both tables;
    a generalized column (bands in the release) falls back to a categorical
    comparison on string values. Columns absent from either side are skipped.
    """
    if columns is None:
        columns = [c for c in real_data.columns if c in synthetic_data.columns]
    real_kinds = column_kinds(real_data)
    synth_kinds = column_kinds(synthetic_data)

    per_column: Dict[str, Dict[str, Any]] = {}
    for col in columns:
        if col not in real_data.columns or col not in synthetic_data.columns:
            continue
        if real_kinds[col] == NUMERIC and synth_kinds[col] == NUMERIC:
            stats = _numeric_fidelity(real_data[col], synthetic_data[col])
            if stats is not None:
                per_column[col] = stats
        else:
            per_column[col] = _categorical_fidelity(real_data[col], synthetic_data[col])

    numeric = [s for s in per_column.values() if s['type'] == NUMERIC]
    categorical = [s for s in per_column.values() if s['type'] == CATEGORICAL]

    summary: Dict[str, Any] = {
        'n_real_samples': len(real_data),
        'n_synthetic_samples': len(synthetic_data),
        'n_numeric_columns': len(numeric),
        'n_categorical_columns': len(categorical),
    }
    if numeric:
        summary['mean_numeric_ks_statistic'] = float(np.mean([s['kolmogorov_smirnov_statistic'] for s in numeric]))
        summary['mean_numeric_wasserstein_distance'] = float(np.mean([s['wasserstein_distance'] for s in numeric]))
        summary['mean_numeric_jsd'] = float(np.mean([s['jensen_shannon_divergence'] for s in numeric]))
    if categorical:
        summary['mean_categorical_jsd'] = float(np.mean([s['jensen_shannon_divergence'] for s in categorical]))
        summary['mean_categorical_tv_distance'] = float(np.mean([s['total_variation_distance'] for s in categorical]))
        summary['mean_categorical_coverage'] = float(np.mean([s['coverage'] for s in categorical]))

    numeric_shared = [c for c, s in per_column.items() if s['type'] == NUMERIC]
    correlation = compare_correlations(real_data, synthetic_data, numeric_shared) if len(numeric_shared) > 1 else None

    return {
        'columns': per_column,
        'correlation': correlation,
        'summary': summary,
    }


def print_fidelity_report(metrics: Dict[str, Any], verbose: bool = True) -> None:
    """Print a formatted fidelity metrics report."""
    print("=" * 80)
    print("Fidelity Metrics Report")
    print("=" * 80)

    summary = metrics.get('summary', {})
    print(f"\nDataset Summary:")
    print(f"  Real samples: {summary.get('n_real_samples', 0):,}")
    print(f"  Synthetic samples: {summary.get('n_synthetic_samples', 0):,}")
    print(f"  Numeric columns: {summary.get('n_numeric_columns', 0)}")
    print(f"  Categorical columns: {summary.get('n_categorical_columns', 0)}")

    if 'mean_numeric_ks_statistic' in summary:
        print(f"\nNumeric Columns:")
        print(f"  Average KS statistic: {summary['mean_numeric_ks_statistic']:.4f} (0=identical, 1=different)")
        print(f"  Average Wasserstein distance: {summary['mean_numeric_wasserstein_distance']:.4f}")
        print(f"  Average JSD (binned): {summary['mean_numeric_jsd']:.4f}")
    if 'mean_categorical_jsd' in summary:
        print(f"\nCategorical Columns:")
        print(f"  Average JSD: {summary['mean_categorical_jsd']:.4f}")
        print(f"  Average TV distance: {summary['mean_categorical_tv_distance']:.4f}")
        print(f"  Average coverage: {summary['mean_categorical_coverage']:.2%}")

    if verbose:
        for col, stats in metrics.get('columns', {}).items():
            print(f"\n  {col} ({stats['type']}):")
            if stats['type'] == NUMERIC:
                print(f"    KS statistic: {stats['kolmogorov_smirnov_statistic']:.4f} "
                      f"(p={stats['kolmogorov_smirnov_pvalue']:.4f})")
                print(f"    Wasserstein distance: {stats['wasserstein_distance']:.4f}")
                print(f"    Real mean: {stats['real_mean']:.2f}, Synthetic mean: {stats['synth_mean']:.2f}")
            else:
                print(f"    JSD: {stats['jensen_shannon_divergence']:.4f}")
                print(f"    TV distance: {stats['total_variation_distance']:.4f}")
                print(f"    Coverage: {stats['coverage']:.2%}")

    corr = metrics.get('correlation')
    if corr:
        print(f"\nCorrelation Preservation (latent scale):")
        print(f"  Frobenius error: {corr['frobenius_error']:.4f}")
        print(f"  Max absolute error: {corr['max_abs_error']:.4f}")

    print("\n" + "=" * 80)
