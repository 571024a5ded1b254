"""k-anonymity enforcement: generalize, aggregate, then suppress until every class has k rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pandas.api.types import CategoricalDtype

from .schema import NUMERIC, column_kind, qi_groups, require_columns

logger = logging.getLogger(__name__)

OTHER_LABEL = "Other"

PASS_NUMERIC_GENERALIZATION = "numeric_generalization"
PASS_CATEGORICAL_GENERALIZATION = "categorical_generalization"
PASS_MICRO_AGGREGATION = "micro_aggregation"
PASS_SUPPRESSION = "suppression"


# ======================== Equivalence classes ========================

def class_sizes(table: pd.DataFrame, quasi_identifiers: Sequence[str]) -> pd.Series:
    """Size of each row's equivalence class, aligned to the table's index."""
    ids = qi_groups(table, quasi_identifiers)
    return ids.map(ids.value_counts()).astype(int)


def min_class_size(table: pd.DataFrame, quasi_identifiers: Sequence[str]) -> int:
    """Smallest equivalence class; 0 for an empty table."""
    if len(table) == 0:
        return 0
    return int(qi_groups(table, quasi_identifiers).value_counts().min())


def equivalence_classes(table: pd.DataFrame, quasi_identifiers: Sequence[str]) -> Dict[Tuple, int]:
    """{QI tuple: class size} for every class in the table."""
    qi = list(quasi_identifiers)
    if not qi:
        return {(): len(table)} if len(table) else {}
    sizes = table.groupby(qi, dropna=False, observed=True, sort=False).size()
    return {(k if isinstance(k, tuple) else (k,)): int(v) for k, v in sizes.items()}


# ============================== Reports ==============================

@dataclass(frozen=True)
class PassRecord:
    name: str
    columns: Tuple[str, ...]
    rows_suppressed: int = 0
    k_after: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'columns': list(self.columns),
            'rows_suppressed': self.rows_suppressed,
            'k_after': self.k_after,
            'details': dict(self.details),
        }


@dataclass(frozen=True)
class EnforcementReport:
    target_k: int
    quasi_identifiers: Tuple[str, ...]
    initial_k: int
    final_k: int
    rows_in: int
    rows_out: int
    passes: Tuple[PassRecord, ...] = ()
    rows_suppressed: int = 0

    @property
    def compliant(self) -> bool:
        return self.rows_out > 0 and self.final_k >= self.target_k

    @property
    def passes_applied(self) -> List[str]:
        return [p.name for p in self.passes]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'target_k': self.target_k,
            'quasi_identifiers': list(self.quasi_identifiers),
            'initial_k': self.initial_k,
            'final_k': self.final_k,
            'rows_in': self.rows_in,
            'rows_out': self.rows_out,
            'rows_suppressed': self.rows_suppressed,
            'compliant': self.compliant,
            'passes': [p.to_dict() for p in self.passes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnforcementReport":
        passes = tuple(
            PassRecord(
                name=p['name'],
                columns=tuple(p.get('columns', ())),
                rows_suppressed=int(p.get('rows_suppressed', 0)),
                k_after=int(p.get('k_after', 0)),
                details=dict(p.get('details', {})),
            )
            for p in data.get('passes', [])
        )
        return cls(
            target_k=int(data['target_k']),
            quasi_identifiers=tuple(data.get('quasi_identifiers', ())),
            initial_k=int(data['initial_k']),
            final_k=int(data['final_k']),
            rows_in=int(data.get('rows_in', 0)),
            rows_out=int(data.get('rows_out', 0)),
            passes=passes,
            rows_suppressed=int(data.get('rows_suppressed', 0)),
        )


def _record(report: EnforcementReport, table: pd.DataFrame, rec: PassRecord) -> EnforcementReport:
    k_after = min_class_size(table, report.quasi_identifiers)
    rec = replace(rec, k_after=k_after)
    logger.info(
        "Pass %s on %s: k=%d (target %d), %d rows",
        rec.name, list(rec.columns), k_after, report.target_k, len(table),
    )
    return replace(
        report,
        passes=report.passes + (rec,),
        final_k=k_after,
        rows_out=len(table),
        rows_suppressed=report.rows_suppressed + rec.rows_suppressed,
    )


# ============================ Pass helpers ============================

def _is_band_column(series: pd.Series) -> bool:
    dtype = series.dtype
    return isinstance(dtype, CategoricalDtype) and bool(dtype.ordered)


def _fmt(x: float, precision: int = 6) -> str:
    return f"{x:.{precision}g}"


def _band_labels(edges: np.ndarray, close_last: bool) -> List[str]:
    """Labels for consecutive [edge_i, edge_i+1) bands; precision grows until they differ."""
    n = len(edges) - 1
    for precision in (6, 12, 17):
        labels = [f"[{_fmt(edges[i], precision)}, {_fmt(edges[i + 1], precision)})" for i in range(n)]
        if close_last:
            labels[-1] = labels[-1][:-1] + "]"
        if len(set(labels)) == n:
            return labels
    return [f"{label} #{i}" for i, label in enumerate(labels)]


def _equal_width_spec(values: pd.Series, n_bands: int) -> Dict[str, Any]:
    """Edges and labels of n_bands equal-width bands over the observed range."""
    x = pd.to_numeric(values, errors="coerce").astype(float)
    observed = x[np.isfinite(x)]
    if observed.empty:
        return {'method': 'equal_width', 'edges': [], 'labels': []}
    lo, hi = float(observed.min()), float(observed.max())
    if hi <= lo:
        return {'method': 'equal_width', 'edges': [lo, lo], 'labels': [f"[{_fmt(lo)}, {_fmt(hi)}]"]}
    edges = np.linspace(lo, hi, n_bands + 1)
    return {
        'method': 'equal_width',
        'edges': [float(e) for e in edges],
        'labels': _band_labels(edges, close_last=True),
    }


def _equal_width_bands(values: pd.Series, spec: Dict[str, Any]) -> pd.Series:
    """Map values onto recorded equal-width bands; values outside the edges become missing."""
    x = pd.to_numeric(values, errors="coerce").astype(float).to_numpy()
    edges = np.asarray(spec['edges'], dtype=float)
    labels = list(spec['labels'])
    codes = np.full(x.shape, -1, dtype=int)
    if labels:
        inside = np.isfinite(x) & (x >= edges[0]) & (x <= edges[-1])
        idx = np.clip(np.searchsorted(edges, x[inside], side="right") - 1, 0, len(labels) - 1)
        codes[inside] = idx
    return pd.Series(pd.Categorical.from_codes(codes, categories=labels, ordered=True), index=values.index)


def _fixed_width_label(start: float, width: float) -> str:
    return _band_labels(np.array([start, start + width]), close_last=False)[0]


def _fixed_width_bands(values: pd.Series, width: float) -> pd.Series:
    x = pd.to_numeric(values, errors="coerce").astype(float).to_numpy()
    finite = np.isfinite(x)
    starts = np.full(x.shape, np.nan)
    starts[finite] = np.floor(x[finite] / width) * width
    ordered_starts = np.unique(starts[finite])
    labels = [_fixed_width_label(s, width) for s in ordered_starts]
    if len(set(labels)) < len(labels):
        labels = [f"{label} #{i}" for i, label in enumerate(labels)]
    codes = np.full(x.shape, -1, dtype=int)
    codes[finite] = np.searchsorted(ordered_starts, starts[finite])
    return pd.Series(pd.Categorical.from_codes(codes, categories=labels, ordered=True), index=values.index)


def _sort_key(series: pd.Series) -> pd.Series:
    if _is_band_column(series):
        return pd.Series(series.cat.codes.to_numpy(), index=series.index)
    if column_kind(series) == NUMERIC:
        return series
    return series.astype(str)


def _mode(series: pd.Series) -> Any:
    counts = series.value_counts(dropna=False, sort=False)
    if _is_band_column(series):
        counts = counts[counts > 0]
    # ties go to the first value in sorted order so the choice is deterministic
    top = counts[counts == counts.max()].index
    return sorted(top, key=str)[0]


# ============================ Passes ============================
# Each pass is a pure function (table, report, target_k) -> (table, report).

def numerical_generalization(
    table: pd.DataFrame,
    report: EnforcementReport,
    target_k: int,
    *,
    n_bands: int = 10,
    band_widths: Optional[Dict[str, float]] = None,
) -> Tuple[pd.DataFrame, EnforcementReport]:
    """Replace numeric quasi-identifiers with the band that contains them."""
    band_widths = dict(band_widths or {})
    cols = [c for c in report.quasi_identifiers if column_kind(table[c]) == NUMERIC]
    if not cols:
        return table, report
    out = table.copy()
    bands: Dict[str, Dict[str, Any]] = {}
    for c in cols:
        width = band_widths.get(c)
        if width is not None:
            out[c] = _fixed_width_bands(out[c], float(width))
            bands[c] = {'method': 'fixed_width', 'width': float(width)}
        else:
            bands[c] = _equal_width_spec(out[c], n_bands)
            out[c] = _equal_width_bands(out[c], bands[c])
    rec = PassRecord(PASS_NUMERIC_GENERALIZATION, tuple(cols), details={'bands': bands})
    return out, _record(report, out, rec)


def categorical_generalization(
    table: pd.DataFrame,
    report: EnforcementReport,
    target_k: int,
    *,
    other_label: str = OTHER_LABEL,
) -> Tuple[pd.DataFrame, EnforcementReport]:
    """Collapse categories seen fewer than target_k times into a shared "Other" label."""
    out = table.copy()
    touched: List[str] = []
    merged: Dict[str, List[str]] = {}
    for c in report.quasi_identifiers:
        s = out[c]
        if column_kind(s) == NUMERIC or _is_band_column(s):
            continue
        counts = s.astype(object).value_counts(dropna=False)
        rare = [v for v, n in counts.items() if n < target_k and v != other_label]
        if not rare:
            continue
        obj = s.astype(object)
        out[c] = obj.where(~obj.isin(rare), other_label)
        touched.append(c)
        merged[c] = sorted(str(v) for v in rare)
    if not touched:
        return table, report
    rec = PassRecord(PASS_CATEGORICAL_GENERALIZATION, tuple(touched), details={'merged': merged})
    return out, _record(report, out, rec)


def apply_generalization(
    table: pd.DataFrame,
    report: EnforcementReport,
    other_label: str = OTHER_LABEL,
) -> pd.DataFrame:
    """Replay the recorded bands and category merges of ``report`` onto another table.

    Used to put the source table in the same QI vocabulary as a release before
    comparing the two. Micro-aggregation and suppression are row-specific and are
    not replayed.
    """
    out = table.copy()
    for rec in report.passes:
        if rec.name == PASS_NUMERIC_GENERALIZATION:
            for c, spec in rec.details.get('bands', {}).items():
                if c not in out.columns:
                    continue
                if spec['method'] == 'fixed_width':
                    width = float(spec['width'])
                    x = pd.to_numeric(out[c], errors="coerce").astype(float)
                    out[c] = x.map(
                        lambda v: _fixed_width_label(np.floor(v / width) * width, width)
                        if np.isfinite(v) else np.nan
                    )
                else:
                    out[c] = _equal_width_bands(out[c], spec)
        elif rec.name == PASS_CATEGORICAL_GENERALIZATION:
            for c, rare in rec.details.get('merged', {}).items():
                if c not in out.columns:
                    continue
                obj = out[c].astype(object)
                out[c] = obj.where(~obj.map(str).isin(rare), other_label)
    return out


def micro_aggregation(
    table: pd.DataFrame,
    report: EnforcementReport,
    target_k: int,
) -> Tuple[pd.DataFrame, EnforcementReport]:
    """Merge the rows of undersized classes into groups of target_k sharing one QI tuple.

    Rows are ordered by their QI values, cut into consecutive runs of target_k
    (a short tail joins the previous run), and every run takes its mean (numeric)
    or mode (categorical) on each quasi-identifier. Row count is unchanged.
    """
    qi = list(report.quasi_identifiers)
    if not qi or len(table) == 0:
        return table, report
    sizes = class_sizes(table, qi)
    pool = table.index[sizes < target_k]
    if len(pool) < target_k:
        return table, report

    order = pd.DataFrame({c: _sort_key(table.loc[pool, c]) for c in qi}, index=pool)
    order = order.sort_values(by=qi, kind="mergesort")
    ordered = list(order.index)
    n_groups = len(ordered) // target_k
    groups = [ordered[i * target_k:(i + 1) * target_k] for i in range(n_groups)]
    tail = ordered[n_groups * target_k:]
    if tail:
        groups[-1] = groups[-1] + tail

    out = table.copy()
    for c in qi:
        numeric = column_kind(out[c]) == NUMERIC
        if numeric:
            out[c] = out[c].astype(float)
        for rows in groups:
            values = out.loc[rows, c]
            out.loc[rows, c] = float(values.mean()) if numeric else _mode(values)
    rec = PassRecord(
        PASS_MICRO_AGGREGATION,
        tuple(qi),
        details={'rows_aggregated': len(ordered), 'groups': len(groups)},
    )
    return out, _record(report, out, rec)


def suppression(
    table: pd.DataFrame,
    report: EnforcementReport,
    target_k: int,
) -> Tuple[pd.DataFrame, EnforcementReport]:
    """Drop undersized classes, smallest first, until every remaining class has target_k rows."""
    keys = qi_groups(table, report.quasi_identifiers)
    counts = keys.value_counts()
    small = counts[counts < target_k]
    if small.empty:
        return table, report
    # smallest first; ties go to the class that appears first in the table
    victims = sorted(small.items(), key=lambda kv: (kv[1], kv[0]))
    keep = pd.Series(True, index=table.index)
    removed = 0
    for key, n in victims:
        keep &= keys != key
        removed += int(n)
    out = table.loc[keep]
    rec = PassRecord(
        PASS_SUPPRESSION,
        tuple(report.quasi_identifiers),
        rows_suppressed=removed,
        details={'classes_removed': len(victims)},
    )
    return out, _record(report, out, rec)


# ============================ Enforcer ============================

class AnonymityEnforcer:
    """Transform a table until every equivalence class over the quasi-identifiers has k rows.

    Passes run from least to most destructive and stop as soon as the table is
    k-anonymous:

      1. numerical generalization (equal-width bands, or fixed widths per column)
      2. categorical generalization (rare categories -> "Other")
      3. micro-aggregation of the rows in undersized classes
      4. suppression of whatever is still undersized

    ``enforce`` never raises for an unreachable k: the worst case is an empty
    table with final_k = 0, reported as non-compliant.
    """

    PASS_ORDER = (
        PASS_NUMERIC_GENERALIZATION,
        PASS_CATEGORICAL_GENERALIZATION,
        PASS_MICRO_AGGREGATION,
        PASS_SUPPRESSION,
    )

    def __init__(
        self,
        *,
        n_bands: int = 10,
        band_widths: Optional[Dict[str, float]] = None,
        other_label: str = OTHER_LABEL,
        passes: Optional[Sequence[str]] = None,
    ) -> None:
        self.n_bands = int(n_bands)
        if self.n_bands < 1:
            raise ValueError("n_bands must be >= 1")
        self.band_widths = {k: float(v) for k, v in (band_widths or {}).items()}
        if any(not np.isfinite(w) or w <= 0 for w in self.band_widths.values()):
            raise ValueError("band widths must be positive")
        self.other_label = str(other_label)
        passes = list(passes) if passes is not None else list(self.PASS_ORDER)
        unknown = [p for p in passes if p not in self.PASS_ORDER]
        if unknown:
            raise ValueError(f"Unknown passes: {unknown}")
        # always run in the fixed order regardless of how they were listed
        self.passes = [p for p in self.PASS_ORDER if p in passes]

    def _pass_functions(self) -> Dict[str, Callable[..., Tuple[pd.DataFrame, EnforcementReport]]]:
        return {
            PASS_NUMERIC_GENERALIZATION: lambda t, r, k: numerical_generalization(
                t, r, k, n_bands=self.n_bands, band_widths=self.band_widths
            ),
            PASS_CATEGORICAL_GENERALIZATION: lambda t, r, k: categorical_generalization(
                t, r, k, other_label=self.other_label
            ),
            PASS_MICRO_AGGREGATION: micro_aggregation,
            PASS_SUPPRESSION: suppression,
        }

    def enforce(
        self,
        table: pd.DataFrame,
        quasi_identifiers: Sequence[str],
        target_k: int,
    ) -> Tuple[pd.DataFrame, EnforcementReport]:
        """Return the k-anonymous table and a report of what it took to get there."""
        qi = tuple(require_columns(table, quasi_identifiers, "table being anonymized"))
        target_k = int(target_k)
        if target_k < 1:
            raise ValueError("target_k must be >= 1")

        initial_k = min_class_size(table, qi)
        report = EnforcementReport(
            target_k=target_k,
            quasi_identifiers=qi,
            initial_k=initial_k,
            final_k=initial_k,
            rows_in=len(table),
            rows_out=len(table),
        )
        current = table.copy()
        if report.compliant:
            return current, report

        functions = self._pass_functions()
        for name in self.passes:
            current, report = functions[name](current, report, target_k)
            if report.compliant:
                break

        if not report.compliant:
            logger.warning(
                "k-anonymity not reached: final k=%d, target %d, %d of %d rows kept",
                report.final_k, target_k, report.rows_out, report.rows_in,
            )
        return current, report


def print_enforcement_report(report: EnforcementReport) -> None:
    """Print formatted enforcement report."""
    print("=" * 80)
    print("k-Anonymity Enforcement Report")
    print("=" * 80)

    print(f"\nQuasi-Identifier Columns: {', '.join(report.quasi_identifiers) or '(none)'}")
    print(f"Target k: {report.target_k}")
    print(f"  Initial k: {report.initial_k}")
    print(f"  Final k: {report.final_k}")
    print(f"  Rows: {report.rows_in:,} in, {report.rows_out:,} out ({report.rows_suppressed:,} suppressed)")

    if report.passes:
        print(f"\nPasses Applied:")
        for p in report.passes:
            line = f"  {p.name} on {', '.join(p.columns)} -> k={p.k_after}"
            if p.rows_suppressed:
                line += f" ({p.rows_suppressed:,} rows removed)"
            print(line)
    else:
        print(f"\nNo passes needed")

    status = "COMPLIANT" if report.compliant else "NOT COMPLIANT"
    print(f"\nStatus: {status}")
    print("\n" + "=" * 80)
