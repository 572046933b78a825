from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Union

import pandas as pd

from pointverif.core.errors import VerificationInputError

MEMBER_PATTERN = re.compile(r"_mbr\d+")

# row key of a forecast table after the valid time has been derived
CASE_KEYS = ["SID", "validdate", "lead_time"]
OBS_KEYS = ["SID", "validdate"]

# model-name suffix of the unshifted copy of a shifted model
UNSHIFTED_SUFFIX = "_unshifted"

ForecastCollection = Dict[str, pd.DataFrame]
ForecastInput = Union[pd.DataFrame, Mapping[str, pd.DataFrame]]


def member_columns(df: pd.DataFrame) -> List[str]:
    return [c for c in df.columns if MEMBER_PATTERN.search(str(c))]


def require_members(df: pd.DataFrame) -> List[str]:
    cols = member_columns(df)
    if not cols:
        raise VerificationInputError("Forecast column names must contain '_mbr' to indicate an ensemble")
    return cols


def require_column(df: pd.DataFrame, column: str) -> None:
    if column not in df.columns:
        raise VerificationInputError(f"No column found for {column}")


def is_collection(fcst: object) -> bool:
    return isinstance(fcst, Mapping)


def apply_to_collection(fcst: ForecastInput, func: Callable[..., pd.DataFrame], *args, **kwargs) -> ForecastInput:
    """
    Run `func` on a single table, or on every table of a model collection
    keeping the model-name keys.
    """
    if is_collection(fcst):
        return {mname: func(df, *args, **kwargs) for mname, df in fcst.items()}
    if isinstance(fcst, pd.DataFrame):
        return func(fcst, *args, **kwargs)
    raise TypeError(f"Expected a DataFrame or a mapping of DataFrames, got {type(fcst).__name__}")


def parse_date(value: object) -> pd.Timestamp:
    """
    Accepts YYYYMMDD, YYYYMMDDHH or YYYYMMDDHHmm (int or str), or anything
    pandas already understands as a datetime.
    """
    if isinstance(value, (pd.Timestamp, datetime)):
        return pd.Timestamp(value)
    s = str(value).strip()
    formats = {8: "%Y%m%d", 10: "%Y%m%d%H", 12: "%Y%m%d%H%M"}
    if s.isdigit():
        if len(s) not in formats:
            raise VerificationInputError(f"Cannot parse date '{value}': expected YYYYMMDD(HH)(mm)")
        return pd.to_datetime(s, format=formats[len(s)])
    ts = pd.to_datetime(s, errors="coerce")
    if pd.isna(ts):
        raise VerificationInputError(f"Cannot parse date '{value}'")
    return pd.Timestamp(ts)


def add_cycle_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Derive validdate and fcst_cycle from fcdate + lead_time where they are missing."""
    out = df.copy()
    if "fcdate" in out.columns:
        out["fcdate"] = as_datetime(out["fcdate"])
        if "validdate" not in out.columns:
            out["validdate"] = out["fcdate"] + pd.to_timedelta(out["lead_time"].astype(float), unit="h")
        out["fcst_cycle"] = out["fcdate"].dt.strftime("%H")
    if "validdate" in out.columns:
        out["validdate"] = as_datetime(out["validdate"])
    return out


def as_datetime(s: pd.Series) -> pd.Series:
    # one resolution everywhere so merges on time keys line up
    return pd.to_datetime(s).astype("datetime64[ns]")
