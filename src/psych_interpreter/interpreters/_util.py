from __future__ import annotations

from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from ..errors import DataShapeError

ID_COLUMN = "variable"
DESCRIPTION_COLUMN = "description"


def get_field(obj: Any, *names: str, default: Any = None) -> Any:
    """First present field among ``names``, read from a mapping key or an attribute."""
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj and obj[name] is not None:
                return obj[name]
        else:
            value = getattr(obj, name, None)
            if value is not None:
                return value
    return default


def as_2d_frame(values: Any, *, what: str, index: Sequence[str] | None = None, columns: Sequence[str] | None = None) -> pd.DataFrame:
    if isinstance(values, pd.DataFrame):
        df = values.copy()
    else:
        try:
            arr = np.asarray(values, dtype=float)
        except (TypeError, ValueError) as exc:
            raise DataShapeError(f"{what} must be numeric, got {type(values).__name__}") from exc
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2:
            raise DataShapeError(f"{what} must be 2-dimensional, got {arr.ndim} dimensions")
        df = pd.DataFrame(arr)
    if df.empty:
        raise DataShapeError(f"{what} is empty")
    try:
        df = df.astype(float)
    except (TypeError, ValueError) as exc:
        raise DataShapeError(f"{what} must contain only numeric values") from exc
    if index is not None:
        df.index = list(index)
    if columns is not None:
        df.columns = list(columns)
    df.index = [str(i) for i in df.index]
    df.columns = [str(c) for c in df.columns]
    return df


def default_names(existing: Sequence[Any], prefix: str, sep: str = "") -> list[str]:
    """Keep meaningful labels; replace a bare RangeIndex (0..n-1) with ``prefix1..prefixN``."""
    labels = list(existing)
    if labels == list(range(len(labels))) or labels == [str(i) for i in range(len(labels))]:
        return [f"{prefix}{sep}{i + 1}" for i in range(len(labels))]
    return [str(x) for x in labels]


def align_variable_info(variable_info: Any, variable_names: Sequence[str]) -> pd.DataFrame:
    """
    Check the metadata table against the model and return it in model variable order.

    Requires ``variable`` and ``description`` columns, one row per model variable, and
    an identifier for every model variable.
    """
    if not isinstance(variable_info, pd.DataFrame):
        raise DataShapeError(
            f"variable_info must be a pandas DataFrame with '{ID_COLUMN}' and '{DESCRIPTION_COLUMN}' "
            f"columns, got {type(variable_info).__name__}"
        )
    missing_cols = [c for c in (ID_COLUMN, DESCRIPTION_COLUMN) if c not in variable_info.columns]
    if missing_cols:
        raise DataShapeError(
            f"variable_info is missing required column(s): {', '.join(missing_cols)}. "
            f"Expected columns '{ID_COLUMN}' and '{DESCRIPTION_COLUMN}'."
        )
    n_rows = len(variable_info)
    n_vars = len(variable_names)
    if n_rows != n_vars:
        raise DataShapeError(
            f"variable_info has {n_rows} rows but the model has {n_vars} variables. "
            f"Provide exactly one row per variable."
        )
    info = variable_info.copy()
    info[ID_COLUMN] = info[ID_COLUMN].astype(str)
    unknown = [v for v in variable_names if v not in set(info[ID_COLUMN])]
    if unknown:
        raise DataShapeError(
            f"variable_info has no row for model variable(s): {', '.join(unknown)}"
        )
    info[DESCRIPTION_COLUMN] = info[DESCRIPTION_COLUMN].fillna("").astype(str)
    info = info.set_index(ID_COLUMN, drop=False).loc[list(variable_names)].reset_index(drop=True)
    return info


def descriptions(variable_info: pd.DataFrame | None) -> dict[str, str]:
    if variable_info is None or variable_info.empty:
        return {}
    return dict(zip(variable_info[ID_COLUMN].astype(str), variable_info[DESCRIPTION_COLUMN].astype(str)))


def word_target(word_limit: int) -> str:
    return f"{int(round(word_limit * 0.8))}-{word_limit}"
