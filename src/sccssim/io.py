from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import pandas as pd

from .dataset import SCCS_COLUMNS

TableFormat = Literal["csv", "parquet"]

# Exposure columns are missing for unexposed subjects; keep them integer.
_NULLABLE_INT_COLUMNS = ("exposure_start", "exposure_end")


def _infer_format(path: Path) -> TableFormat:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return "csv"
    if suffix == ".parquet":
        return "parquet"
    raise ValueError(f"Unsupported table format for path: {path}")


def read_table(path: str | Path, *, columns: Optional[list[str]] = None) -> pd.DataFrame:
    path = Path(path)
    if _infer_format(path) == "csv":
        return pd.read_csv(path, usecols=columns)
    return pd.read_parquet(path, columns=columns)


def write_table(df: pd.DataFrame, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if _infer_format(path) == "csv":
        df.to_csv(path, index=False)
    else:
        df.to_parquet(path, index=False)


def read_sccs_dataset(path: str | Path) -> pd.DataFrame:
    """Read a dataset written by `write_table`, restoring the canonical column dtypes."""
    df = read_table(path, columns=SCCS_COLUMNS)
    for c in SCCS_COLUMNS:
        if c in _NULLABLE_INT_COLUMNS:
            df[c] = df[c].astype("Int64")
        else:
            df[c] = df[c].astype("int64")
    return df.loc[:, SCCS_COLUMNS]
