"""Membership inference audit: can a classifier tell source rows from synthetic ones?"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import accuracy_score, roc_auc_score
from sklearn.model_selection import GroupShuffleSplit
from sklearn.neighbors import NearestNeighbors

from .exceptions import InsufficientDataError, SchemaMismatchError
from .schema import NUMERIC, column_kinds, require_columns, shared_qi_groups

logger = logging.getLogger(__name__)

BASELINE = 0.5
DEFAULT_THRESHOLD = 0.55
FEATURE_NAMES = ("nn_distance_original", "nn_distance_synthetic", "marginal_log_density")
_SAME_POINT_TOL = 1e-9


@dataclass(frozen=True)
class InferenceResult:
    attack_success_rate: float
    threshold: float
    columns: Tuple[str, ...]
    baseline: float = BASELINE
    features: Tuple[str, ...] = FEATURE_NAMES
    auc: Optional[float] = None
    exact_copy_rate: float = 0.0
    n_train: int = 0
    n_test: int = 0
    classifier: str = "random_forest"
    seed: int = 0

    @property
    def passed(self) -> bool:
        return self.attack_success_rate < self.threshold

    @property
    def advantage(self) -> float:
        """How far the attacker gets above a coin flip."""
        return self.attack_success_rate - self.baseline

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attack_success_rate': self.attack_success_rate,
            'baseline': self.baseline,
            'threshold': self.threshold,
            'passed': self.passed,
            'advantage': self.advantage,
            'auc': self.auc,
            'exact_copy_rate': self.exact_copy_rate,
            'columns': list(self.columns),
            'features': list(self.features),
            'n_train': self.n_train,
            'n_test': self.n_test,
            'classifier': self.classifier,
            'seed': self.seed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InferenceResult":
        return cls(
            attack_success_rate=float(data['attack_success_rate']),
            threshold=float(data.get('threshold', DEFAULT_THRESHOLD)),
            columns=tuple(data.get('columns', ())),
            baseline=float(data.get('baseline', BASELINE)),
            features=tuple(data.get('features', FEATURE_NAMES)),
            auc=data.get('auc'),
            exact_copy_rate=float(data.get('exact_copy_rate', 0.0)),
            n_train=int(data.get('n_train', 0)),
            n_test=int(data.get('n_test', 0)),
            classifier=str(data.get('classifier', 'random_forest')),
            seed=int(data.get('seed', 0)),
        )


# ============================ Feature building ============================

def _encode(
    original: pd.DataFrame,
    synthetic: pd.DataFrame,
    columns: Sequence[str],
) -> Tuple[np.ndarray, np.ndarray]:
    """Put both tables in one numeric space: pooled z-scores and one-hot categories."""
    kinds = column_kinds(original[list(columns)])
    pooled = pd.concat([original[list(columns)], synthetic[list(columns)]], axis=0, ignore_index=True)
    blocks: List[np.ndarray] = []
    for c in columns:
        if kinds[c] == NUMERIC:
            x = pd.to_numeric(pooled[c], errors="coerce").astype(float)
            x = x.fillna(x.median() if x.notna().any() else 0.0)
            std = float(x.std())
            z = (x - float(x.mean())) / (std if std > 1e-12 else 1.0)
            blocks.append(z.to_numpy()[:, None])
        else:
            dummies = pd.get_dummies(pooled[c].astype(str), dtype=float)
            blocks.append(dummies.to_numpy())
    matrix = np.hstack(blocks) if blocks else np.zeros((len(pooled), 0))
    n_orig = len(original)
    return matrix[:n_orig], matrix[n_orig:]


def _distinct_neighbor_distance(pool: np.ndarray, queries: np.ndarray) -> np.ndarray:
    """Distance from each query to the nearest pool point that is not the query itself.

    The pool is de-duplicated first, so at most one pool point can coincide with
    a query; the feature then only depends on the query's values and not on
    which table it was drawn from.
    """
    unique = np.unique(pool, axis=0)
    if unique.shape[0] < 2:
        return np.zeros(queries.shape[0])
    nn = NearestNeighbors(n_neighbors=2).fit(unique)
    dist, _ = nn.kneighbors(queries)
    return np.where(dist[:, 0] <= _SAME_POINT_TOL, dist[:, 1], dist[:, 0])


def _marginal_log_density(
    reference: pd.DataFrame,
    rows: pd.DataFrame,
    columns: Sequence[str],
) -> np.ndarray:
    """Sum of per-column log densities under histogram marginals fitted on ``reference``."""
    kinds = column_kinds(reference[list(columns)])
    score = np.zeros(len(rows))
    for c in columns:
        if kinds[c] == NUMERIC:
            ref = pd.to_numeric(reference[c], errors="coerce").dropna().to_numpy(dtype=float)
            x = pd.to_numeric(rows[c], errors="coerce").to_numpy(dtype=float)
            if ref.size == 0 or np.ptp(ref) == 0:
                continue
            n_bins = min(50, max(10, int(np.sqrt(ref.size))))
            counts, edges = np.histogram(ref, bins=n_bins)
            density = (counts + 1.0) / ((counts.sum() + n_bins) * np.diff(edges))
            idx = np.clip(np.searchsorted(edges, x, side="right") - 1, 0, n_bins - 1)
            logd = np.log(density[idx])
            # outside the reference range or missing: use the smallest bin density
            logd[~np.isfinite(x) | (x < edges[0]) | (x > edges[-1])] = np.log(density.min())
            score += logd
        else:
            freqs = reference[c].astype(str).value_counts()
            total = float(freqs.sum())
            k = len(freqs) + 1
            probs = rows[c].astype(str).map(freqs).fillna(0.0).to_numpy(dtype=float)
            score += np.log((probs + 1.0) / (total + k))
    return score


# ============================ Auditor ============================

class InferenceAuditor:
    """Train a distinguishing classifier and report how often it guesses membership right.

    Positives are rows of the source table, negatives are rows of the synthetic
    table. Each row is described by its distance to the nearest other source row,
    its distance to the nearest other synthetic row, and its log density under the
    source marginals. The attack success rate is the classifier's accuracy on a
    held-out split; the audit passes when it stays under ``threshold``. Rows with
    identical values are kept on the same side of the split.
    """

    CLASSIFIERS = ("random_forest", "logistic")

    def __init__(
        self,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        test_size: float = 0.3,
        classifier: str = "random_forest",
        n_estimators: int = 100,
        max_depth: Optional[int] = 4,
        seed: int = 0,
    ) -> None:
        self.threshold = float(threshold)
        if not BASELINE <= self.threshold <= 1.0:
            raise ValueError("threshold must be in [0.5, 1]")
        self.test_size = float(test_size)
        if not 0.0 < self.test_size < 1.0:
            raise ValueError("test_size must be in (0, 1)")
        self.classifier = str(classifier).lower()
        if self.classifier not in self.CLASSIFIERS:
            raise ValueError(f"classifier must be one of {self.CLASSIFIERS}")
        self.n_estimators = int(n_estimators)
        self.max_depth = max_depth
        self.seed = int(seed)

    def _make_classifier(self, seed: int):
        if self.classifier == "logistic":
            return LogisticRegression(max_iter=1000, random_state=seed)
        return RandomForestClassifier(
            n_estimators=self.n_estimators,
            max_depth=self.max_depth,
            min_samples_leaf=5,
            random_state=seed,
        )

    @staticmethod
    def resolve_columns(
        original: pd.DataFrame,
        synthetic: pd.DataFrame,
        sensitive_columns: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Columns the attack will use; raises SchemaMismatchError on malformed input."""
        if sensitive_columns is not None:
            columns = require_columns(original, sensitive_columns, "original table")
            require_columns(synthetic, columns, "synthetic table")
        else:
            if set(original.columns) != set(synthetic.columns):
                raise SchemaMismatchError(
                    "Original and synthetic tables have different columns: "
                    f"only in original {sorted(set(original.columns) - set(synthetic.columns))}, "
                    f"only in synthetic {sorted(set(synthetic.columns) - set(original.columns))}"
                )
            columns = list(original.columns)
        if not columns:
            raise SchemaMismatchError("No columns to attack on")
        kinds_o = column_kinds(original[columns])
        kinds_s = column_kinds(synthetic[columns])
        mismatched = [c for c in columns if kinds_o[c] != kinds_s[c]]
        if mismatched:
            raise SchemaMismatchError(
                f"Columns {mismatched} are numeric in one table and categorical in the other"
            )
        return columns

    def run_attack(
        self,
        original: pd.DataFrame,
        synthetic: pd.DataFrame,
        sensitive_columns: Optional[Sequence[str]] = None,
        seed: Optional[int] = None,
    ) -> InferenceResult:
        """Run the membership attack. A fixed seed gives the same split and the same rate."""
        seed = self.seed if seed is None else int(seed)
        columns = self.resolve_columns(original, synthetic, sensitive_columns)
        if len(original) < 2 or len(synthetic) < 2:
            raise InsufficientDataError("Membership attack needs at least 2 rows in each table")

        orig = original[columns].reset_index(drop=True)
        synth = synthetic[columns].reset_index(drop=True)
        Z_orig, Z_synth = _encode(orig, synth, columns)

        # balance the classes by down-sampling the larger table
        rng = np.random.default_rng(seed)
        n = min(len(orig), len(synth))
        pos_idx = np.sort(rng.choice(len(orig), size=n, replace=False))
        neg_idx = np.sort(rng.choice(len(synth), size=n, replace=False))

        Z_members = Z_orig[pos_idx]
        Z_nonmembers = Z_synth[neg_idx]
        queries = np.vstack([Z_members, Z_nonmembers])
        rows = pd.concat([orig.iloc[pos_idx], synth.iloc[neg_idx]], axis=0, ignore_index=True)

        X = np.column_stack([
            _distinct_neighbor_distance(Z_orig, queries),
            _distinct_neighbor_distance(Z_synth, queries),
            _marginal_log_density(orig, rows, columns),
        ])
        y = np.concatenate([np.ones(n), np.zeros(n)])

        # identical rows share a group so a copied record and its twin stay on one side of the split
        groups = np.unique(queries, axis=0, return_inverse=True)[1].reshape(-1)
        if len(np.unique(groups)) < 2:
            logger.warning("Every attacked row is identical; reporting the random-guess rate")
            return self._result(BASELINE, None, original, synthetic, columns, 0, len(y), seed)

        splitter = GroupShuffleSplit(n_splits=1, test_size=self.test_size, random_state=seed)
        train_idx, test_idx = next(splitter.split(X, y, groups=groups))
        X_train, X_test = X[train_idx], X[test_idx]
        y_train, y_test = y[train_idx], y[test_idx]

        model = self._make_classifier(seed)
        model.fit(X_train, y_train)
        rate = float(accuracy_score(y_test, model.predict(X_test)))
        auc: Optional[float] = None
        if len(np.unique(y_test)) == 2 and len(model.classes_) == 2:
            auc = float(roc_auc_score(y_test, model.predict_proba(X_test)[:, 1]))
        return self._result(rate, auc, original, synthetic, columns, len(y_train), len(y_test), seed)

    def _result(
        self,
        rate: float,
        auc: Optional[float],
        original: pd.DataFrame,
        synthetic: pd.DataFrame,
        columns: Sequence[str],
        n_train: int,
        n_test: int,
        seed: int,
    ) -> InferenceResult:
        result = InferenceResult(
            attack_success_rate=rate,
            threshold=self.threshold,
            columns=tuple(columns),
            auc=auc,
            exact_copy_rate=exact_copy_rate(original, synthetic, columns),
            n_train=int(n_train),
            n_test=int(n_test),
            classifier=self.classifier,
            seed=seed,
        )
        logger.info(
            "Membership attack on %d columns: success rate %.4f (threshold %.2f, %s)",
            len(columns), rate, self.threshold, "passed" if result.passed else "failed",
        )
        return result


def exact_copy_rate(
    original: pd.DataFrame,
    synthetic: pd.DataFrame,
    columns: Optional[Sequence[str]] = None,
) -> float:
    """Fraction of synthetic rows that are an exact copy of some original row."""
    columns = list(columns if columns is not None else original.columns)
    if len(synthetic) == 0:
        return 0.0
    real_ids, synth_ids = shared_qi_groups(original, synthetic, columns)
    return float(synth_ids.isin(set(real_ids)).mean())


def print_inference_report(result: InferenceResult) -> None:
    """Print formatted membership inference report."""
    print("=" * 80)
    print("Membership Inference Attack Report")
    print("=" * 80)

    print(f"\nColumns: {', '.join(result.columns)}")
    print(f"Features: {', '.join(result.features)}")
    print(f"Classifier: {result.classifier} (seed={result.seed})")
    print(f"  Train rows: {result.n_train:,}, test rows: {result.n_test:,}")

    print(f"\nAttack success rate: {result.attack_success_rate:.4f}")
    print(f"  Baseline (random guess): {result.baseline:.2f}")
    print(f"  Pass threshold: < {result.threshold:.2f}")
    if result.auc is not None:
        print(f"  AUC: {result.auc:.4f}")
    print(f"  Exact copy rate: {result.exact_copy_rate:.4f}")
    print(f"    (Lower is better - exact copies cannot be told apart by any attack)")

    print(f"\nStatus: {'PASSED' if result.passed else 'FAILED'}")
    print("\n" + "=" * 80)
