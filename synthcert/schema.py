"""Column kinds and small table helpers shared by every component."""

from typing import Dict, Iterable, List, Sequence, Tuple

import pandas as pd
from pandas.api.types import is_bool_dtype, is_numeric_dtype

from .exceptions import SchemaMismatchError

NUMERIC = "numeric"
CATEGORICAL = "categorical"


def column_kind(series: pd.Series) -> str:
    """Booleans count as categorical even though pandas calls them numeric."""
    if is_numeric_dtype(series) and not is_bool_dtype(series):
        return NUMERIC
    return CATEGORICAL


def column_kinds(table: pd.DataFrame) -> Dict[str, str]:
    """Ordered {column: kind} map for a table."""
    return {c: column_kind(table[c]) for c in table.columns}


def numeric_columns(table: pd.DataFrame) -> List[str]:
    return [c for c, kind in column_kinds(table).items() if kind == NUMERIC]


def categorical_columns(table: pd.DataFrame) -> List[str]:
    return [c for c, kind in column_kinds(table).items() if kind == CATEGORICAL]


def require_columns(table: pd.DataFrame, columns: Iterable[str], what: str = "table") -> List[str]:
    """Return columns as a list, raising SchemaMismatchError if any is absent."""
    columns = list(columns)
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise SchemaMismatchError(f"Columns {missing} not found in {what}")
    return columns


def _plain(frame: pd.DataFrame) -> pd.DataFrame:
    """Categorical columns as plain objects so two tables with different categories can be stacked."""
    cats = [c for c in frame.columns if isinstance(frame[c].dtype, pd.CategoricalDtype)]
    return frame.astype({c: object for c in cats}) if cats else frame


def qi_groups(table: pd.DataFrame, quasi_identifiers: Sequence[str]) -> pd.Series:
    """Equivalence class id per row, aligned to the table's index.

    Two rows share an id exactly when their quasi-identifier tuples are equal.
    Missing values form a class of their own. With no quasi-identifiers every
    row is in class 0.
    """
    qi = list(quasi_identifiers)
    if not qi or len(table) == 0:
        return pd.Series(0, index=table.index, dtype=int)
    return table.groupby(qi, dropna=False, observed=True, sort=False).ngroup().astype(int)


def shared_qi_groups(
    left: pd.DataFrame,
    right: pd.DataFrame,
    quasi_identifiers: Sequence[str],
) -> Tuple[pd.Series, pd.Series]:
    """Class ids for two tables drawn from one numbering, so equal tuples get equal ids."""
    qi = list(quasi_identifiers)
    both = pd.concat([_plain(left[qi]), _plain(right[qi])], axis=0, ignore_index=True)
    ids = qi_groups(both, qi).to_numpy()
    n = len(left)
    return (
        pd.Series(ids[:n], index=left.index, dtype=int),
        pd.Series(ids[n:], index=right.index, dtype=int),
    )
