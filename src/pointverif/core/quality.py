from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from pointverif.core.tables import CASE_KEYS, ForecastInput, is_collection, member_columns, require_column

logger = logging.getLogger(__name__)


# Plausibility bounds for observations, in the units observations are stored in.
GROSS_ERROR_BOUNDS: Dict[str, Tuple[float, float]] = {
    "T2m": (223.0, 333.0),
    "Td2m": (223.0, 333.0),
    "Tmax": (223.0, 333.0),
    "Tmin": (223.0, 333.0),
    "RH2m": (0.0, 100.0),
    "Q2m": (0.0, 0.05),
    "S10m": (0.0, 100.0),
    "Gmax": (0.0, 150.0),
    "D10m": (0.0, 360.0),
    "Pmsl": (900.0, 1100.0),
    "Ps": (400.0, 1100.0),
    "CCtot": (0.0, 8.0),
    "CClow": (0.0, 8.0),
    "AccPcp1h": (0.0, 100.0),
    "AccPcp3h": (0.0, 200.0),
    "AccPcp6h": (0.0, 300.0),
    "AccPcp12h": (0.0, 400.0),
    "AccPcp24h": (0.0, 500.0),
    "vis": (0.0, 100000.0),
}

# Number of ensemble standard deviations an observation may sit from the ensemble mean.
NUM_SD_ALLOWED: Dict[str, float] = {
    "T2m": 6.0,
    "Td2m": 6.0,
    "RH2m": 6.0,
    "S10m": 6.0,
    "Gmax": 6.0,
    "Pmsl": 6.0,
    "Ps": 6.0,
}
DEFAULT_NUM_SD = 6.0
PRECIP_NUM_SD = 10.0


@dataclass(frozen=True)
class QualityConfig:
    gross_error_check: bool = True
    check_obs_fcst: bool = True
    min_allowed: Optional[float] = None
    max_allowed: Optional[float] = None
    num_sd_allowed: Optional[float] = None


def gross_error_bounds(parameter: str) -> Tuple[float, float]:
    """(min, max) for a parameter; unknown parameters are unbounded."""
    return GROSS_ERROR_BOUNDS.get(parameter, (-np.inf, np.inf))


def default_num_sd(parameter: str) -> float:
    if parameter in NUM_SD_ALLOWED:
        return NUM_SD_ALLOWED[parameter]
    if parameter.startswith("AccPcp") or parameter.startswith("Pcp"):
        return PRECIP_NUM_SD
    return DEFAULT_NUM_SD


def gross_error_check(
    obs: pd.DataFrame,
    parameter: str,
    min_allowed: Optional[float] = None,
    max_allowed: Optional[float] = None,
) -> pd.DataFrame:
    """
    Remove observations outside [min_allowed, max_allowed]. Values on a bound
    are kept. Missing observations are removed too.
    """
    require_column(obs, parameter)
    lo, hi = gross_error_bounds(parameter)
    lo = lo if min_allowed is None else float(min_allowed)
    hi = hi if max_allowed is None else float(max_allowed)

    values = pd.to_numeric(obs[parameter], errors="coerce")
    ok = values.notna() & (values >= lo) & (values <= hi)

    n_bad = int((~ok).sum())
    if n_bad:
        logger.debug("gross_error_check: removed %d of %d %s observations outside [%s, %s]",
                     n_bad, len(obs), parameter, lo, hi)
    return obs[ok].reset_index(drop=True)


def _pooled_spread(fcst: ForecastInput, exclude: Sequence[str] = ()) -> pd.DataFrame:
    if is_collection(fcst):
        tables = [df for mname, df in fcst.items() if mname not in exclude]
    else:
        tables = [fcst]
    long_parts = []
    for df in tables:
        mbr = member_columns(df)
        if df.empty or not mbr:
            continue
        keys = [k for k in CASE_KEYS if k in df.columns]
        long_parts.append(df[keys + mbr].melt(id_vars=keys, value_vars=mbr, value_name="fcst")[keys + ["fcst"]])

    if not long_parts:
        return pd.DataFrame(columns=CASE_KEYS + ["fc_mean", "fc_sd"])

    pooled = pd.concat(long_parts, ignore_index=True).dropna(subset=["fcst"])
    keys = [k for k in CASE_KEYS if k in pooled.columns]
    stats = pooled.groupby(keys, dropna=False)["fcst"].agg(fc_mean="mean", fc_sd="std")
    return stats.reset_index()


def check_obs_against_fcst(
    fcst: ForecastInput,
    parameter: str,
    num_sd_allowed: Optional[float] = None,
    exclude_from_pool: Sequence[str] = (),
) -> ForecastInput:
    """
    Remove cases where the observation is more than `num_sd_allowed` ensemble
    standard deviations from the ensemble mean. Members of every model are
    pooled, and a removed case is removed from all models.

    Models in `exclude_from_pool` (multimodel pools, whose members repeat
    those of their sub-models) do not add members to the pool but still lose
    removed cases. `<model>_unshifted` copies hold a different run at each case
    and are pooled.
    """
    k = default_num_sd(parameter) if num_sd_allowed is None else float(num_sd_allowed)
    tables = list(fcst.values()) if is_collection(fcst) else [fcst]
    for df in tables:
        require_column(df, parameter)

    stats = _pooled_spread(fcst, exclude_from_pool)
    if stats.empty:
        return fcst

    keys = [c for c in CASE_KEYS if c in stats.columns and all(c in df.columns for df in tables)]
    obs = pd.concat([df[keys + [parameter]] for df in tables], ignore_index=True).drop_duplicates(subset=keys)
    checked = obs.merge(stats, on=keys, how="inner")

    dev = (checked[parameter] - checked["fc_mean"]).abs()
    bad = checked.loc[dev > k * checked["fc_sd"], keys].drop_duplicates()
    if bad.empty:
        return fcst

    logger.debug("check_obs_against_fcst: removing %d cases more than %s sd from the ensemble mean", len(bad), k)

    def _drop_bad(df: pd.DataFrame) -> pd.DataFrame:
        flagged = df[keys].merge(bad, on=keys, how="left", indicator=True)["_merge"].eq("both").to_numpy()
        return df[~flagged].reset_index(drop=True)

    if is_collection(fcst):
        return {mname: _drop_bad(df) for mname, df in fcst.items()}
    return _drop_bad(fcst)


def apply_quality_control(
    fcst: ForecastInput,
    parameter: str,
    cfg: QualityConfig,
    exclude_from_pool: Sequence[str] = (),
) -> ForecastInput:
    """Forecast-relative check on joined data, driven by a QualityConfig."""
    if not cfg.check_obs_fcst:
        return fcst
    return check_obs_against_fcst(
        fcst, parameter, num_sd_allowed=cfg.num_sd_allowed, exclude_from_pool=exclude_from_pool
    )


def quality_control_obs(obs: pd.DataFrame, parameter: str, cfg: QualityConfig) -> pd.DataFrame:
    """Absolute bounds check on the observation series, driven by a QualityConfig."""
    if not cfg.gross_error_check:
        return obs
    return gross_error_check(obs, parameter, cfg.min_allowed, cfg.max_allowed)

