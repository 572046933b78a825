from __future__ import annotations

import logging
import zlib
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from pointverif.core.climatology import ClimatologyResolver, ClimatologySpec
from pointverif.core.metrics import bias, brier_score, brier_skill_score, mae, rmse, stde
from pointverif.core.results import VerificationResult
from pointverif.core.tables import (
    ForecastInput,
    apply_to_collection,
    is_collection,
    require_column,
    require_members,
)

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ["num_cases", "mean_bias", "rmse", "stde", "spread", "spread_skill_ratio", "rank_histogram"]
THRESHOLD_COLUMNS = [
    "threshold",
    "num_cases",
    "fcst_prob_mean",
    "obs_freq",
    "climatology",
    "brier_score",
    "brier_score_ref",
    "brier_skill_score",
]
DET_COLUMNS = ["member", "num_cases", "bias", "rmse", "mae", "stde"]

Jitter = Callable[[np.ndarray], np.ndarray]


# ---------------------------------------------------------------------------
# Case-level statistics
# ---------------------------------------------------------------------------

def member_stats(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Row-wise (n, mean, variance) over member values, ignoring missing members.

    The variance uses the n-1 denominator with n the number of members present
    for that case; with a single member it is NaN.
    """
    values = np.asarray(values, dtype=float)
    finite = np.isfinite(values)
    n = finite.sum(axis=1)
    filled = np.where(finite, values, 0.0)
    with np.errstate(invalid="ignore", divide="ignore"):
        mean = filled.sum(axis=1) / n
        sq = np.where(finite, (values - mean[:, None]) ** 2, 0.0)
        var = sq.sum(axis=1) / (n - 1)
    mean = np.where(n >= 1, mean, np.nan)
    var = np.where(n >= 2, var, np.nan)
    return n, mean, var


def _mean_and_var_table(df: pd.DataFrame, mean_name: str, var_name: str) -> pd.DataFrame:
    mbr = require_members(df)
    _, mean, var = member_stats(df[mbr].to_numpy(dtype=float))
    out = df.copy()
    out[mean_name] = mean
    out[var_name] = var
    return out


def ens_mean_and_var(fcst: ForecastInput, mean_name: str = "ens_mean", var_name: str = "ens_var") -> ForecastInput:
    """Add ensemble mean and variance columns to a forecast table or to every table of a collection."""
    return apply_to_collection(fcst, _mean_and_var_table, mean_name, var_name)


def rank_histogram_ranks(
    members: np.ndarray,
    obs: np.ndarray,
    rng: np.random.Generator,
    jitter: Optional[Jitter] = None,
) -> np.ndarray:
    """
    Rank of each observation among its members: 1 when below all members,
    n+1 when above all. An observation tied with k members gets a rank drawn
    uniformly from the k+1 tied positions.
    """
    members = np.asarray(members, dtype=float)
    if jitter is not None:
        members = np.asarray(jitter(members), dtype=float)
    obs = np.asarray(obs, dtype=float)

    finite = np.isfinite(members)
    below = (finite & (members < obs[:, None])).sum(axis=1)
    ties = (finite & (members == obs[:, None])).sum(axis=1)
    return below + 1 + rng.integers(0, ties + 1)


def rank_histogram(ranks: np.ndarray, num_members: int) -> np.ndarray:
    """Counts per rank 1..num_members+1."""
    ranks = np.asarray(ranks, dtype=int)
    return np.bincount(ranks - 1, minlength=num_members + 1)


def threshold_probabilities(members: np.ndarray, obs: np.ndarray, threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Forecast probability (fraction of present members > threshold) and observed
    probability (1 if obs > threshold else 0) per case.
    """
    members = np.asarray(members, dtype=float)
    obs = np.asarray(obs, dtype=float)
    finite = np.isfinite(members)
    n = finite.sum(axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        fcst_prob = (finite & (members > threshold)).sum(axis=1) / n
    obs_prob = np.where(np.isfinite(obs), (obs > threshold).astype(float), np.nan)
    return fcst_prob, obs_prob


def _threshold_label(threshold: float) -> str:
    return f"{float(threshold):g}"


def _det_probs_table(
    df: pd.DataFrame,
    parameter: str,
    thresholds: Sequence[float],
    fcst_col: str,
    obs_probabilities: bool,
) -> pd.DataFrame:
    require_column(df, parameter)
    require_column(df, fcst_col)

    fc = pd.to_numeric(df[fcst_col], errors="coerce").to_numpy(dtype=float)
    ob = pd.to_numeric(df[parameter], errors="coerce").to_numpy(dtype=float)

    probs = {}
    for t in thresholds:
        label = _threshold_label(t)
        probs[f"fcst_prob_{label}"] = np.where(np.isfinite(fc), (fc > t).astype(float), np.nan)
        if obs_probabilities:
            probs[f"obs_prob_{label}"] = np.where(np.isfinite(ob), (ob > t).astype(float), np.nan)

    return pd.concat([df, pd.DataFrame(probs, index=df.index)], axis=1)


def det_probabilities(
    fcst: ForecastInput,
    parameter: str,
    thresholds: Iterable[float],
    fcst_col: str = "forecast",
    obs_probabilities: bool = True,
) -> ForecastInput:
    """
    Binary exceedance probabilities for a deterministic forecast column.

    The probability columns are bound onto the input rows, so every row keeps
    its own 0/1 values next to the forecast and observation.
    """
    thresholds = _as_thresholds(thresholds)
    return apply_to_collection(fcst, _det_probs_table, parameter, thresholds, fcst_col, obs_probabilities)


# ---------------------------------------------------------------------------
# Grouped verification
# ---------------------------------------------------------------------------

def _as_thresholds(thresholds: object) -> List[float]:
    if thresholds is None:
        return []
    if np.isscalar(thresholds):
        return [float(thresholds)]
    return [float(t) for t in thresholds]


def _group_rng(random_state: int, mname: str, key: Tuple) -> np.random.Generator:
    # seeded per model and group so chunking does not change tie-breaking
    tag = zlib.crc32(("|".join([str(mname)] + [str(k) for k in key])).encode("utf-8"))
    return np.random.default_rng([int(random_state), int(tag)])


def _member_label(col: str) -> str:
    i = col.find("_mbr")
    return col[i + 1:] if i >= 0 else col


def _summary_row(g: pd.DataFrame, obs: np.ndarray, members: np.ndarray, ranks: np.ndarray) -> Dict[str, object]:
    em = g["ens_mean"].to_numpy(dtype=float)
    ev = g["ens_var"].to_numpy(dtype=float)
    ev = ev[np.isfinite(ev)]

    spread = float(np.sqrt(np.mean(ev))) if ev.size else float("nan")
    err = rmse(obs, em)
    ratio = spread / err if np.isfinite(err) and err > 0 else float("nan")

    return {
        "num_cases": int(len(g)),
        "mean_bias": bias(obs, em),
        "rmse": err,
        "stde": stde(obs, em),
        "spread": spread,
        "spread_skill_ratio": ratio,
        "rank_histogram": rank_histogram(ranks, members.shape[1]).tolist(),
    }


def _threshold_row(
    threshold: float,
    members: np.ndarray,
    obs: np.ndarray,
    clim: float,
) -> Dict[str, object]:
    fcst_prob, obs_prob = threshold_probabilities(members, obs, threshold)
    bs = brier_score(fcst_prob, obs_prob)
    bs_ref = brier_score(np.full(obs_prob.shape, clim, dtype=float), obs_prob)
    return {
        "threshold": float(threshold),
        "num_cases": int(len(obs)),
        "fcst_prob_mean": float(np.nanmean(fcst_prob)) if len(obs) else float("nan"),
        "obs_freq": float(np.nanmean(obs_prob)) if len(obs) else float("nan"),
        "climatology": float(clim),
        "brier_score": bs,
        "brier_score_ref": bs_ref,
        "brier_skill_score": brier_skill_score(bs, bs_ref),
    }


def _det_rows(g: pd.DataFrame, parameter: str, mbr: List[str]) -> List[Dict[str, object]]:
    obs = g[parameter].to_numpy(dtype=float)
    rows = []
    for col in mbr:
        x = g[col].to_numpy(dtype=float)
        rows.append(
            {
                "member": _member_label(col),
                "num_cases": int((np.isfinite(x) & np.isfinite(obs)).sum()),
                "bias": bias(obs, x),
                "rmse": rmse(obs, x),
                "mae": mae(obs, x),
                "stde": stde(obs, x),
            }
        )
    return rows


def ens_verify(
    fcst: ForecastInput,
    parameter: str,
    thresholds: Optional[Iterable[float]] = None,
    groupings: Sequence[str] | str = ("lead_time",),
    climatology: ClimatologySpec = "sample",
    verify_members: bool = True,
    jitter_fcst: Optional[Jitter] = None,
    random_state: int = 42,
) -> VerificationResult:
    """
    Verify ensemble forecasts joined to observations.

    fcst is a single table or a {mname: table} collection; each table needs
    member columns (`*_mbr*`), the observation column `parameter` and the
    grouping columns. Scores are computed per model and per group:

      ens_summary_scores:   mean error, rmse and stde of the ensemble mean,
                            spread, spread/skill ratio and rank histogram
      ens_threshold_scores: Brier score and Brier skill score per threshold
      det_summary_scores:   bias, rmse, mae and stde of each member
                            (only if verify_members)

    Cases with a missing observation or no members present are not scored.
    """
    groupings = [groupings] if isinstance(groupings, str) else list(groupings)
    thresholds = _as_thresholds(thresholds)

    if is_collection(fcst):
        tables = dict(fcst)
    else:
        mname = str(fcst["mname"].iloc[0]) if "mname" in fcst.columns and len(fcst) else "fcst"
        tables = {mname: fcst}

    # input contract is checked for every model before any scoring
    members_by_model = {}
    for mname, df in tables.items():
        members_by_model[mname] = require_members(df)
        require_column(df, parameter)
        for col in groupings:
            require_column(df, col)

    resolver = ClimatologyResolver.from_spec(climatology, tables, groupings) if thresholds else None

    summary_rows: List[Dict[str, object]] = []
    threshold_rows: List[Dict[str, object]] = []
    det_rows: List[Dict[str, object]] = []
    stations = set()

    for mname, df in tables.items():
        mbr = members_by_model[mname]
        values = df[mbr].to_numpy(dtype=float)
        obs = pd.to_numeric(df[parameter], errors="coerce").to_numpy(dtype=float)
        n, mean, var = member_stats(values)

        scored = np.isfinite(obs) & (n > 0)
        if not scored.all():
            logger.debug("ens_verify: %s has %d rows without observation or members", mname, int((~scored).sum()))
        data = df.loc[scored].copy()
        data[parameter] = obs[scored]
        data["ens_mean"] = mean[scored]
        data["ens_var"] = var[scored]
        if data.empty:
            logger.warning("ens_verify: no cases to verify for %s", mname)
            continue

        if "SID" in data.columns:
            stations.update(data["SID"].unique().tolist())
        sort_cols = [c for c in ("SID", "fcdate", "validdate") if c in data.columns]

        for key, g in data.groupby(groupings, dropna=False, sort=True):
            key = key if isinstance(key, tuple) else (key,)
            if sort_cols:
                g = g.sort_values(sort_cols, kind="mergesort")
            group_cols = dict(zip(groupings, key))

            g_members = g[mbr].to_numpy(dtype=float)
            g_obs = g[parameter].to_numpy(dtype=float)
            ranks = rank_histogram_ranks(g_members, g_obs, _group_rng(random_state, mname, key), jitter_fcst)

            summary_rows.append({"mname": mname, **group_cols, **_summary_row(g, g_obs, g_members, ranks)})

            for t in thresholds:
                clim = resolver.probability(t, key, g_obs)
                threshold_rows.append({"mname": mname, **group_cols, **_threshold_row(t, g_members, g_obs, clim)})

            if verify_members:
                for row in _det_rows(g, parameter, mbr):
                    det_rows.append({"mname": mname, **group_cols, **row})

    base = ["mname"] + groupings
    return VerificationResult(
        ens_summary_scores=pd.DataFrame(summary_rows, columns=base + SUMMARY_COLUMNS),
        ens_threshold_scores=pd.DataFrame(threshold_rows, columns=base + THRESHOLD_COLUMNS),
        det_summary_scores=pd.DataFrame(det_rows, columns=base + DET_COLUMNS),
        num_stations=len(stations),
    )
