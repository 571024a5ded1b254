from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pandas.api.types import is_integer_dtype
from scipy import stats

from .exceptions import DegenerateCorrelationError, InsufficientDataError
from .schema import CATEGORICAL, NUMERIC, column_kinds

logger = logging.getLogger(__name__)

UNIFORM_CLAMP: float = 1e-6  # keeps norm.ppf finite at the ends of the ECDF
EIGEN_FLOOR: float = 1e-6


# ======================== Latent-normal transform ========================

def _latent_normal(values: np.ndarray, clamp: float = UNIFORM_CLAMP) -> np.ndarray:
    """Map a column to standard-normal scores through its empirical CDF.

    Ties share their average rank; missing values map to 0 (the latent median).
    """
    x = np.asarray(values, dtype=float)
    out = np.zeros(x.shape[0], dtype=float)
    mask = np.isfinite(x)
    m = int(mask.sum())
    if m == 0:
        return out
    ranks = stats.rankdata(x[mask], method="average")
    u = np.clip(ranks / (m + 1.0), clamp, 1.0 - clamp)
    out[mask] = stats.norm.ppf(u)
    return out


def _correlation_of(latent: np.ndarray) -> np.ndarray:
    """Sample correlation of latent columns; zero-variance columns correlate with nothing."""
    d = latent.shape[1]
    if d == 0:
        return np.zeros((0, 0))
    if d == 1:
        return np.ones((1, 1))
    std = latent.std(axis=0)
    corr = np.zeros((d, d))
    live = std > 1e-12
    if live.sum() > 1:
        with np.errstate(invalid="ignore", divide="ignore"):
            sub = np.corrcoef(latent[:, live], rowvar=False)
        corr[np.ix_(live, live)] = np.nan_to_num(sub, nan=0.0)
    corr = np.clip((corr + corr.T) / 2.0, -1.0, 1.0)
    np.fill_diagonal(corr, 1.0)
    return corr


def latent_correlation(table: pd.DataFrame, columns: Optional[Sequence[str]] = None) -> np.ndarray:
    """Correlation matrix of a table's numeric columns on the latent-normal scale."""
    if columns is None:
        columns = [c for c, k in column_kinds(table).items() if k == NUMERIC]
    columns = list(columns)
    if not columns:
        return np.zeros((0, 0))
    latent = np.column_stack([
        _latent_normal(pd.to_numeric(table[c], errors="coerce").to_numpy()) for c in columns
    ])
    return _correlation_of(latent)


def _correlation_distance(a: np.ndarray, b: np.ndarray) -> Dict[str, float]:
    diff = np.asarray(a) - np.asarray(b)
    if diff.size == 0:
        return {'frobenius_error': 0.0, 'max_abs_error': 0.0}
    return {
        'frobenius_error': float(np.linalg.norm(diff, ord='fro')),
        'max_abs_error': float(np.max(np.abs(diff))),
    }


def compare_correlations(
    table_a: pd.DataFrame,
    table_b: pd.DataFrame,
    columns: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """Compare the correlation structure of two tables.

    Uses the numeric columns the two tables share (or ``columns``) and returns the
    Frobenius norm of the difference plus the largest single-cell difference.
    """
    if columns is None:
        kinds_a = column_kinds(table_a)
        kinds_b = column_kinds(table_b)
        columns = [c for c, k in kinds_a.items() if k == NUMERIC and kinds_b.get(c) == NUMERIC]
    columns = list(columns)
    result: Dict[str, Any] = {'columns': columns}
    result.update(_correlation_distance(latent_correlation(table_a, columns), latent_correlation(table_b, columns)))
    return result


def _floor_eigenvalues(corr: np.ndarray, floor: float) -> Tuple[np.ndarray, bool]:
    """Clip eigenvalues to ``floor`` and rescale back to a unit diagonal."""
    if corr.size == 0:
        return corr, False
    eigvals, eigvecs = np.linalg.eigh(corr)
    if eigvals.min() >= floor:
        return corr, False
    clipped = np.clip(eigvals, floor, None)
    fixed = (eigvecs * clipped) @ eigvecs.T
    scale = np.sqrt(np.diag(fixed))
    fixed = fixed / np.outer(scale, scale)
    fixed = (fixed + fixed.T) / 2.0
    np.fill_diagonal(fixed, 1.0)
    return fixed, True


# ============================ Model internals ============================

@dataclass(frozen=True)
class _NumericMarginal:
    sorted_values: np.ndarray
    min: float
    max: float
    mean: float
    std: float
    is_int: bool = False
    missing_rate: float = 0.0

    def inverse_cdf(self, u: np.ndarray) -> np.ndarray:
        """Linear interpolation between stored order statistics, clamped to [min, max]."""
        m = self.sorted_values.shape[0]
        positions = np.arange(1, m + 1, dtype=float) / (m + 1.0)
        return np.interp(u, positions, self.sorted_values)


@dataclass(frozen=True)
class _CategoricalMarginal:
    categories: np.ndarray
    probs: np.ndarray


class GaussianCopulaModel:
    """Correlation-preserving sampler built on a Gaussian copula.

    Fitting keeps, for every numeric column, the sorted observed values and a few
    summary statistics, then estimates one correlation matrix on the latent-normal
    scale (rank -> uniform score -> normal quantile). Sampling draws correlated
    normals, pushes them through the normal CDF and then through each column's
    empirical inverse CDF, so marginal shapes and pairwise dependence are both kept.

    Categorical columns stay out of the copula: they are drawn independently from
    their empirical frequencies.

    Once fitted the model is read-only; ``sample`` may be called from several
    threads at once.
    """

    def __init__(
        self,
        *,
        seed: int = 0,
        eigen_floor: float = EIGEN_FLOOR,
        uniform_clamp: float = UNIFORM_CLAMP,
        round_integers: bool = True,
        preserve_missing: bool = True,
    ) -> None:
        self.seed = int(seed)
        self.eigen_floor = float(eigen_floor)
        if not np.isfinite(self.eigen_floor) or self.eigen_floor <= 0:
            raise ValueError("eigen_floor must be positive")
        self.uniform_clamp = float(uniform_clamp)
        if not 0.0 < self.uniform_clamp < 0.5:
            raise ValueError("uniform_clamp must be in (0, 0.5)")
        self.round_integers = bool(round_integers)
        self.preserve_missing = bool(preserve_missing)

        # learned state
        self._columns: List[str] = []
        self._kinds: Dict[str, str] = {}
        self._numeric: Dict[str, _NumericMarginal] = {}
        self._categorical: Dict[str, _CategoricalMarginal] = {}
        self._numeric_order: List[str] = []
        self._corr: Optional[np.ndarray] = None
        self._chol: Optional[np.ndarray] = None
        self._floored: bool = False
        self._n_rows: int = 0

    @property
    def is_fitted(self) -> bool:
        return self._corr is not None

    def _require_fitted(self) -> None:
        if not self.is_fitted:
            raise RuntimeError("Model is not fitted. Call fit() first.")

    def fit(self, table: pd.DataFrame) -> "GaussianCopulaModel":
        """Fit marginals and the latent correlation matrix.

        Raises InsufficientDataError when the table has no columns or a numeric
        column has fewer than 2 observed values, and DegenerateCorrelationError when
        the latent matrix cannot be made positive-definite.
        """
        if table.shape[1] == 0:
            raise InsufficientDataError("Cannot fit a correlation model on a table with no columns")

        kinds = column_kinds(table)
        numeric: Dict[str, _NumericMarginal] = {}
        categorical: Dict[str, _CategoricalMarginal] = {}
        latent_cols: List[np.ndarray] = []
        numeric_order: List[str] = []

        for c, kind in kinds.items():
            if kind == NUMERIC:
                x = pd.to_numeric(table[c], errors="coerce").to_numpy(dtype=float)
                observed = x[np.isfinite(x)]
                if observed.size < 2:
                    raise InsufficientDataError(
                        f"Numeric column '{c}' has {observed.size} observed value(s); at least 2 are needed",
                        column=c,
                    )
                observed = np.sort(observed)
                numeric[c] = _NumericMarginal(
                    sorted_values=observed,
                    min=float(observed[0]),
                    max=float(observed[-1]),
                    mean=float(observed.mean()),
                    std=float(observed.std(ddof=1)),
                    is_int=bool(is_integer_dtype(table[c]) or np.all(np.mod(observed, 1) == 0)),
                    missing_rate=float(1.0 - observed.size / max(len(x), 1)),
                )
                numeric_order.append(c)
                latent_cols.append(_latent_normal(x, self.uniform_clamp))
            else:
                counts = table[c].value_counts(dropna=False)
                total = float(counts.sum())
                if total == 0:
                    categorical[c] = _CategoricalMarginal(np.array([np.nan], dtype=object), np.array([1.0]))
                else:
                    categorical[c] = _CategoricalMarginal(
                        counts.index.to_numpy(dtype=object),
                        counts.to_numpy(dtype=float) / total,
                    )

        latent = np.column_stack(latent_cols) if latent_cols else np.zeros((len(table), 0))
        corr = _correlation_of(latent)
        sampling_corr, floored = _floor_eigenvalues(corr, self.eigen_floor)
        if not np.all(np.isfinite(sampling_corr)):
            raise DegenerateCorrelationError("Latent correlation matrix has non-finite entries")
        try:
            chol = np.linalg.cholesky(sampling_corr) if sampling_corr.size else sampling_corr
        except np.linalg.LinAlgError as exc:
            raise DegenerateCorrelationError(
                "Latent correlation matrix is not positive-definite after eigenvalue flooring"
            ) from exc
        if floored:
            warnings.warn(
                "Latent correlation matrix was near-singular; eigenvalues were floored "
                f"at {self.eigen_floor:g} before sampling (collinear numeric columns?)",
                stacklevel=2,
            )

        self._columns = list(table.columns)
        self._kinds = kinds
        self._numeric = numeric
        self._categorical = categorical
        self._numeric_order = numeric_order
        self._corr = corr
        self._chol = chol
        self._floored = floored
        self._n_rows = len(table)
        logger.info(
            "Fitted copula on %d rows: %d numeric, %d categorical columns",
            self._n_rows, len(numeric_order), len(categorical),
        )
        return self

    def sample(self, n: int, seed: Optional[int] = None) -> pd.DataFrame:
        """Draw ``n`` synthetic rows. Same seed, same rows; fitted state is never touched."""
        self._require_fitted()
        n = int(n)
        if n < 0:
            raise ValueError("n must be non-negative")
        rng = np.random.default_rng(self.seed if seed is None else int(seed))

        d = len(self._numeric_order)
        z = rng.standard_normal((n, d)) @ self._chol.T if d else np.zeros((n, 0))
        u = stats.norm.cdf(z)

        out: Dict[str, Any] = {}
        for j, c in enumerate(self._numeric_order):
            out[c] = self._decode_numeric(c, u[:, j], rng)
        for c in self._columns:
            if c in self._categorical:
                cm = self._categorical[c]
                idx = rng.choice(len(cm.categories), size=n, p=cm.probs)
                out[c] = cm.categories[idx]
        return pd.DataFrame({c: out[c] for c in self._columns})

    def _decode_numeric(self, col: str, u: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        marginal = self._numeric[col]
        values = marginal.inverse_cdf(u)
        if marginal.is_int and self.round_integers:
            values = np.rint(values)
        if self.preserve_missing and marginal.missing_rate > 0:
            drop = rng.random(values.shape[0]) < marginal.missing_rate
            values = values.astype(float)
            values[drop] = np.nan
            return values
        if marginal.is_int and self.round_integers:
            return values.astype(np.int64)
        return values

    @property
    def correlation_(self) -> np.ndarray:
        """Fitted latent correlation matrix (copy), ordered as ``numeric_columns_``."""
        self._require_fitted()
        return self._corr.copy()

    @property
    def numeric_columns_(self) -> List[str]:
        self._require_fitted()
        return list(self._numeric_order)

    def correlation_error(self, table: pd.DataFrame) -> Dict[str, Any]:
        """Distance between the fitted matrix and the latent correlation of ``table``."""
        self._require_fitted()
        result: Dict[str, Any] = {'columns': list(self._numeric_order)}
        result.update(_correlation_distance(self._corr, latent_correlation(table, self._numeric_order)))
        return result

    def model_report(self) -> Dict[str, Any]:
        """Summary of the fitted state: columns, kinds, marginals, flooring."""
        self._require_fitted()
        return {
            'n_rows': self._n_rows,
            'columns': list(self._columns),
            'kinds': dict(self._kinds),
            'numeric_columns': list(self._numeric_order),
            'categorical_columns': [c for c in self._columns if self._kinds[c] == CATEGORICAL],
            'marginals': {
                c: {
                    'min': m.min,
                    'max': m.max,
                    'mean': m.mean,
                    'std': m.std,
                    'is_int': m.is_int,
                    'missing_rate': m.missing_rate,
                    'n_observed': int(m.sorted_values.shape[0]),
                }
                for c, m in self._numeric.items()
            },
            'category_counts': {c: int(len(m.categories)) for c, m in self._categorical.items()},
            'eigenvalue_flooring_applied': self._floored,
            'eigen_floor': self.eigen_floor,
            'seed': self.seed,
        }
