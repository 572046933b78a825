from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from pointverif.core.errors import VerificationInputError
from pointverif.core.tables import (
    CASE_KEYS,
    OBS_KEYS,
    UNSHIFTED_SUFFIX,
    ForecastCollection,
    ForecastInput,
    add_cycle_columns,
    apply_to_collection,
    as_datetime,
    is_collection,
    member_columns,
    require_column,
)

logger = logging.getLogger(__name__)

# Parameter-keyed unit fixes: (source unit, scoring unit, multiplicative factor).
UNIT_RULES: Dict[str, tuple] = {
    "Pmsl": ("Pa", "hPa", 0.01),
}


def merge_multimodel(
    tables: ForecastInput,
    multimodel: Optional[Mapping[str, Sequence[str]]] = None,
) -> ForecastCollection:
    """
    Build a ForecastCollection keyed by model name.

    `tables` is either a mapping {mname: table} or one long table with an
    `mname` column. Each model keeps its own members and units. With
    `multimodel={"name": ["a", "b"]}` the members of the listed models are
    pooled into one extra model called "name".
    """
    if isinstance(tables, pd.DataFrame):
        if "mname" not in tables.columns:
            raise VerificationInputError("A single forecast table must have an 'mname' column to be split by model")
        fcst = {
            str(mname): g.drop(columns=["mname"]).dropna(axis=1, how="all").reset_index(drop=True)
            for mname, g in tables.groupby("mname", sort=False)
        }
    else:
        fcst = {str(mname): df.reset_index(drop=True) for mname, df in tables.items()}

    fcst = {mname: add_cycle_columns(df) for mname, df in fcst.items()}

    for name, subs in (multimodel or {}).items():
        fcst[name] = _pool_members(fcst, name, list(subs))

    return fcst


def _pool_members(fcst: ForecastCollection, name: str, subs: List[str]) -> pd.DataFrame:
    missing = [s for s in subs if s not in fcst]
    if missing:
        raise VerificationInputError(f"Multimodel '{name}' refers to unknown models: {missing}")

    units = {str(fcst[s]["units"].iloc[0]) for s in subs if "units" in fcst[s].columns and len(fcst[s]) > 0}
    if len(units) > 1:
        raise VerificationInputError(f"Multimodel '{name}' mixes units {sorted(units)}")

    keys = ["SID", "fcdate", "lead_time", "validdate"]
    pooled = None
    for sub in subs:
        df = fcst[sub]
        mbr = member_columns(df)
        part = df[keys + mbr].rename(columns={c: f"{name}_{c}" for c in mbr})
        pooled = part if pooled is None else pooled.merge(part, on=keys, how="inner")

    pooled = add_cycle_columns(pooled)
    if units:
        pooled["units"] = units.pop()
    return pooled


def _parent_times(child_times: np.ndarray, parent_times: np.ndarray, direction: int) -> np.ndarray:
    """Map every child issue time onto a parent issue time (NaT when none fits)."""
    out = np.full(child_times.shape, np.datetime64("NaT"), dtype="datetime64[ns]")
    if len(parent_times) == 0:
        return out

    later_idx = np.searchsorted(parent_times, child_times, side="left")
    earlier_idx = np.searchsorted(parent_times, child_times, side="right") - 1
    has_later = later_idx < len(parent_times)
    has_earlier = earlier_idx >= 0

    later = np.where(has_later, parent_times[np.minimum(later_idx, len(parent_times) - 1)], np.datetime64("NaT"))
    earlier = np.where(has_earlier, parent_times[np.maximum(earlier_idx, 0)], np.datetime64("NaT"))

    if direction == 1:
        return later
    if direction == -1:
        return earlier

    # both directions: nearest parent, the later parent wins ties
    d_later = np.where(has_later, (later - child_times).astype("timedelta64[s]").astype(float), np.inf)
    d_earlier = np.where(has_earlier, (child_times - earlier).astype("timedelta64[s]").astype(float), np.inf)
    out = np.where(d_later <= d_earlier, later, earlier)
    return out


def _lag_table(df: pd.DataFrame, parent_cycles: List[int], direction: int) -> pd.DataFrame:
    df = add_cycle_columns(df)
    mbr = member_columns(df)
    is_parent = df["fcdate"].dt.hour.isin(parent_cycles)

    parents = df[is_parent].copy()
    children = df[~is_parent].copy()
    if children.empty:
        return parents.reset_index(drop=True)

    parent_times = np.sort(parents["fcdate"].drop_duplicates().to_numpy(dtype="datetime64[ns]"))
    child_times = children["fcdate"].to_numpy(dtype="datetime64[ns]")
    children["parent_fcdate"] = pd.Series(
        _parent_times(child_times, parent_times, direction), index=children.index
    )

    orphans = int(children["parent_fcdate"].isna().sum())
    if orphans:
        logger.debug("lag_forecast: %d rows have no parent cycle and are dropped", orphans)
    children = children.dropna(subset=["parent_fcdate"])

    lag_h = (children["parent_fcdate"] - children["fcdate"]) / pd.Timedelta(hours=1)
    children["lag_h"] = lag_h.round().astype(int)

    out = parents
    for lag, g in children.groupby("lag_h", sort=True):
        part = g[["SID", "parent_fcdate", "validdate"] + mbr].rename(
            columns={**{c: f"{c}_lag{lag}h" for c in mbr}, "parent_fcdate": "fcdate"}
        )
        part = part.drop_duplicates(subset=["SID", "fcdate", "validdate"])
        out = out.merge(part, on=["SID", "fcdate", "validdate"], how="left")

    return out.reset_index(drop=True)


def lag_forecast(
    fcst: ForecastInput,
    lag_models: Iterable[str] | None,
    parent_cycles: Optional[Sequence[int | str]],
    direction: int = 1,
) -> ForecastInput:
    """
    Pool members from nearby forecast cycles into the parent cycles.

    direction=1 lets earlier cycles join the next parent cycle, -1 lets later
    cycles join the previous one and 0 uses the nearest parent. Member columns
    coming from a child cycle get a `_lag{h}h` suffix, h being the parent issue
    time minus the child issue time in hours.
    """
    if parent_cycles is None or len(parent_cycles) == 0:
        raise VerificationInputError("'parent_cycles' must be passed as well as 'lag_fcst_models'.")
    if direction not in (-1, 0, 1):
        raise VerificationInputError(f"lag direction must be -1, 0 or 1, got {direction}")

    cycles = sorted({int(c) for c in parent_cycles})

    if not is_collection(fcst):
        return _lag_table(fcst, cycles, direction)

    lag_models = list(lag_models or [])
    unknown = [m for m in lag_models if m not in fcst]
    if unknown:
        raise VerificationInputError(f"Lag models not found in forecast data: {unknown}")

    return {
        mname: (_lag_table(df, cycles, direction) if mname in lag_models else df)
        for mname, df in fcst.items()
    }


def _shift_table(df: pd.DataFrame, hours: float, drop_negative_lead_times: bool) -> pd.DataFrame:
    out = add_cycle_columns(df)
    if float(hours).is_integer():
        hours = int(hours)
    if hours != 0:
        out["fcdate"] = out["fcdate"] - pd.Timedelta(hours=hours)
        out["lead_time"] = out["lead_time"] + hours
        out["fcst_cycle"] = out["fcdate"].dt.strftime("%H")
    if drop_negative_lead_times:
        n0 = len(out)
        out = out[out["lead_time"] >= 0]
        if len(out) < n0:
            logger.debug("shift_forecast: dropped %d rows with negative lead time", n0 - len(out))
    return out.reset_index(drop=True)


def shift_forecast(
    fcst: ForecastInput,
    shifts: Mapping[str, float] | float,
    keep_unshifted: bool = False,
    drop_negative_lead_times: bool = True,
) -> ForecastInput:
    """
    Treat a forecast issued at cycle C as issued at C - shift: fcdate moves
    back by `shift` hours and lead_time grows by the same amount, so the
    valid time is untouched.
    """
    if not is_collection(fcst):
        return _shift_table(fcst, float(shifts), drop_negative_lead_times)

    if not isinstance(shifts, Mapping):
        raise VerificationInputError("shifts must map model names to hours when verifying a model collection")
    unknown = [m for m in shifts if m not in fcst]
    if unknown:
        raise VerificationInputError(f"Shifted models not found in forecast data: {unknown}")

    out: ForecastCollection = {}
    for mname, df in fcst.items():
        if mname not in shifts:
            out[mname] = df
            continue
        out[mname] = _shift_table(df, float(shifts[mname]), drop_negative_lead_times)
        if keep_unshifted:
            out[f"{mname}{UNSHIFTED_SUFFIX}"] = df
    return out


def filter_lead_times(fcst: ForecastInput, lead_times: Iterable[int]) -> ForecastInput:
    lead_times = list(lead_times)
    return apply_to_collection(fcst, lambda df: df[df["lead_time"].isin(lead_times)].reset_index(drop=True))


def filter_cycles(fcst: ForecastInput, start: pd.Timestamp, end: pd.Timestamp) -> ForecastInput:
    """Keep forecasts issued in [start, end], after lagging and shifting have relabelled fcdate."""
    start, end = pd.Timestamp(start), pd.Timestamp(end)

    def _window(df: pd.DataFrame) -> pd.DataFrame:
        if "fcdate" not in df.columns:
            return df
        keep = df["fcdate"].between(start, end)
        if not keep.all():
            logger.debug("filter_cycles: dropped %d rows issued outside [%s, %s]", int((~keep).sum()), start, end)
        return df[keep].reset_index(drop=True)

    return apply_to_collection(fcst, _window)


def common_cases(fcst: ForecastInput) -> ForecastInput:
    """Keep only the cases (SID, validdate, lead_time) found in every model."""
    if not is_collection(fcst) or len(fcst) < 2:
        return fcst

    if any(df.empty for df in fcst.values()):
        return {mname: df.iloc[0:0] for mname, df in fcst.items()}

    tables = list(fcst.values())
    keys = [k for k in CASE_KEYS if all(k in df.columns for df in tables)]
    if not keys:
        raise VerificationInputError("No common key columns to find common cases on")

    common = tables[0][keys].drop_duplicates()
    for df in tables[1:]:
        common = common.merge(df[keys].drop_duplicates(), on=keys, how="inner")

    out = {}
    for mname, df in fcst.items():
        kept = df.merge(common, on=keys, how="inner")
        if len(kept) < len(df):
            logger.debug("common_cases: %s reduced from %d to %d rows", mname, len(df), len(kept))
        out[mname] = kept
    return out


def join_to_fcst(fcst: ForecastInput, obs: pd.DataFrame, parameter: str) -> ForecastInput:
    """Inner join of every forecast table to the observations on (SID, validdate)."""
    for col in OBS_KEYS + [parameter]:
        require_column(obs, col)

    obs = obs[OBS_KEYS + [parameter]].copy()
    obs["validdate"] = as_datetime(obs["validdate"])
    obs = obs.drop_duplicates(subset=OBS_KEYS)

    def _join(df: pd.DataFrame) -> pd.DataFrame:
        df = df.drop(columns=[parameter], errors="ignore")
        return df.merge(obs, on=OBS_KEYS, how="inner")

    return apply_to_collection(fcst, _join)


def scale_point_forecast(
    df: pd.DataFrame,
    scale_factor: float,
    new_units: Optional[str] = None,
    multiplicative: bool = False,
) -> pd.DataFrame:
    out = df.copy()
    for c in member_columns(out):
        out[c] = out[c] * scale_factor if multiplicative else out[c] + scale_factor
    if new_units is not None:
        out["units"] = new_units
    return out


def normalize_units(fcst: ForecastInput, parameter: str) -> ForecastInput:
    rule = UNIT_RULES.get(parameter)
    if rule is None:
        return fcst
    src_unit, new_unit, factor = rule

    def _fix(df: pd.DataFrame) -> pd.DataFrame:
        if df.empty or "units" not in df.columns or str(df["units"].iloc[0]) != src_unit:
            return df
        logger.debug("normalize_units: %s %s -> %s", parameter, src_unit, new_unit)
        return scale_point_forecast(df, factor, new_units=new_unit, multiplicative=True)

    return apply_to_collection(fcst, _fix)
