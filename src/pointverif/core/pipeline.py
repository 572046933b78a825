from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from pointverif.core.align import (
    common_cases,
    filter_cycles,
    filter_lead_times,
    join_to_fcst,
    lag_forecast,
    merge_multimodel,
    normalize_units,
    shift_forecast,
)
from pointverif.core.climatology import ClimatologySpec
from pointverif.core.ensemble import ens_verify
from pointverif.core.errors import VerificationInputError
from pointverif.core.quality import QualityConfig, apply_quality_control, quality_control_obs
from pointverif.core.results import VerificationResult, aggregate_results, save_point_verif
from pointverif.core.tables import ForecastCollection, parse_date
from pointverif.io.interfaces import ForecastReader, ObservationReader, ProgressSink, log_progress
from pointverif.io.validators import validate_forecast_table, validate_observation_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifyConfig:
    lead_time: Tuple[int, ...] = tuple(range(0, 49, 3))
    # default: one lead time per iteration
    num_iterations: Optional[int] = None

    verify_members: bool = True
    thresholds: Optional[Tuple[float, ...]] = None
    members: Optional[Tuple[int, ...]] = None
    groupings: Tuple[str, ...] = ("lead_time",)
    by: str = "1d"

    # lagging / shifting
    lags: Optional[Mapping[str, Sequence[int]]] = None
    lag_fcst_models: Optional[Tuple[str, ...]] = None
    parent_cycles: Optional[Tuple[int, ...]] = None
    lag_direction: int = 1
    fcst_shifts: Optional[Mapping[str, int]] = None
    keep_unshifted: bool = False
    drop_neg_leadtimes: bool = True
    multimodel: Optional[Mapping[str, Sequence[str]]] = None

    climatology: ClimatologySpec = "sample"
    stations: Optional[Tuple[object, ...]] = None
    jitter_fcst: Optional[Callable[[np.ndarray], np.ndarray]] = None
    common_cases_only: bool = True

    # quality control
    check_obs_fcst: bool = True
    gross_error_check: bool = True
    min_allowed: Optional[float] = None
    max_allowed: Optional[float] = None
    num_sd_allowed: Optional[float] = None

    random_state: int = 42

    def quality(self) -> QualityConfig:
        return QualityConfig(
            gross_error_check=self.gross_error_check,
            check_obs_fcst=self.check_obs_fcst,
            min_allowed=self.min_allowed,
            max_allowed=self.max_allowed,
            num_sd_allowed=self.num_sd_allowed,
        )


def split_lead_times(lead_times: Sequence[int], num_iterations: Optional[int] = None) -> List[List[int]]:
    """
    Split lead times into contiguous chunks. Chunk r (0-based) holds as many
    lead times as there are 1-based positions i with i % k == r, so with 5 lead
    times and k=2 the chunks have 2 and 3 lead times.
    """
    lead_times = list(lead_times)
    n = len(lead_times)
    if n == 0:
        return []
    k = n if num_iterations is None else max(1, min(int(num_iterations), n))

    sizes = [sum(1 for i in range(1, n + 1) if i % k == r) for r in range(k)]
    chunks: List[List[int]] = []
    pos = 0
    for size in sizes:
        chunks.append(lead_times[pos: pos + size])
        pos += size
    return chunks


def _read_lead_times(chunk: Sequence[int], cfg: VerifyConfig) -> List[int]:
    """Lead times to request so lagged and shifted models can reach the chunk's valid times."""
    needed = set(int(x) for x in chunk)
    for model_lags in (cfg.lags or {}).values():
        for lag in model_lags:
            needed |= {int(lt) + int(lag) for lt in chunk}
    for shift in (cfg.fcst_shifts or {}).values():
        needed |= {int(lt) - int(shift) for lt in chunk}
    return sorted(x for x in needed if x >= 0)


def _read_lags(models: Sequence[str], cfg: VerifyConfig) -> Dict[str, List[int]]:
    configured = cfg.lags or {}
    lags = {m: sorted({int(x) for x in configured.get(m, [0])}) for m in models}
    # a model shifted by s hours is read from the cycles s hours after the verified ones;
    # its own cycles are only needed for the unshifted copy
    for m, shift in (cfg.fcst_shifts or {}).items():
        base = set(lags.get(m, [0]))
        shifted = {x - int(shift) for x in base}
        lags[m] = sorted(shifted | base) if cfg.keep_unshifted else sorted(shifted)
    return lags


def _check_inputs(models: Sequence[str], cfg: VerifyConfig) -> None:
    if not models:
        raise VerificationInputError("At least one forecast model is required")
    if not cfg.lead_time:
        raise VerificationInputError("At least one lead time is required")
    if cfg.lag_fcst_models and not cfg.parent_cycles:
        raise VerificationInputError("'parent_cycles' must be passed as well as 'lag_fcst_models'.")
    unknown = [m for m in (cfg.fcst_shifts or {}) if m not in models]
    if unknown:
        raise VerificationInputError(f"fcst_shifts refers to models not being verified: {unknown}")


def _read_chunk(
    chunk: Sequence[int],
    models: Sequence[str],
    parameter: str,
    read_forecasts: ForecastReader,
    start: pd.Timestamp,
    end: pd.Timestamp,
    cfg: VerifyConfig,
) -> ForecastCollection:
    raw = read_forecasts(
        models=list(models),
        parameter=parameter,
        lead_times=_read_lead_times(chunk, cfg),
        members=list(cfg.members) if cfg.members is not None else None,
        lags=_read_lags(models, cfg),
        cycle_frequency=cfg.by,
        stations=list(cfg.stations) if cfg.stations is not None else None,
        start=start,
        end=end,
    )
    fcst = merge_multimodel(raw, cfg.multimodel)

    for mname, df in fcst.items():
        if df.empty:
            continue
        ok, errors = validate_forecast_table(df)
        if not ok:
            raise VerificationInputError(f"Forecast table for {mname} is invalid: {errors}")
    return fcst


def verify_chunk(
    chunk: Sequence[int],
    models: Sequence[str],
    parameter: str,
    obs: pd.DataFrame,
    read_forecasts: ForecastReader,
    start: pd.Timestamp,
    end: pd.Timestamp,
    cfg: VerifyConfig,
) -> Optional[VerificationResult]:
    """
    Read, align, quality control and score one chunk of lead times.
    Returns None when no model has any forecast/observation pair left.
    """
    fcst = _read_chunk(chunk, models, parameter, read_forecasts, start, end, cfg)

    empty = [m for m, df in fcst.items() if df.empty]
    if empty:
        logger.warning("No forecast data for %s at lead times %s", empty, list(chunk))
        if cfg.common_cases_only:
            # no case can be common to all models
            return None
        fcst = {m: df for m, df in fcst.items() if not df.empty}
        if not fcst:
            return None

    # models dropped for lack of data are not lagged or shifted
    lag_models = [m for m in (cfg.lag_fcst_models or ()) if m in fcst]
    if lag_models:
        fcst = lag_forecast(fcst, lag_models, cfg.parent_cycles, direction=cfg.lag_direction)

    shifts = {m: s for m, s in (cfg.fcst_shifts or {}).items() if m in fcst}
    if shifts:
        fcst = shift_forecast(
            fcst,
            shifts,
            keep_unshifted=cfg.keep_unshifted,
            drop_negative_lead_times=cfg.drop_neg_leadtimes,
        )

    fcst = filter_cycles(fcst, start, end)
    fcst = filter_lead_times(fcst, chunk)

    if cfg.common_cases_only:
        fcst = common_cases(fcst)

    fcst = normalize_units(fcst, parameter)
    fcst = join_to_fcst(fcst, obs, parameter)
    # pooled models repeat their sub-models' members
    pooled = list(cfg.multimodel or {})
    fcst = apply_quality_control(fcst, parameter, cfg.quality(), exclude_from_pool=pooled)

    if all(df.empty for df in fcst.values()):
        return None

    return ens_verify(
        fcst,
        parameter,
        thresholds=cfg.thresholds,
        groupings=cfg.groupings,
        climatology=cfg.climatology,
        verify_members=cfg.verify_members,
        jitter_fcst=cfg.jitter_fcst,
        random_state=cfg.random_state,
    )


def ens_read_and_verify(
    start_date: object,
    end_date: object,
    parameter: str,
    fcst_model: str | Sequence[str],
    read_forecasts: ForecastReader,
    read_observations: ObservationReader,
    cfg: VerifyConfig = VerifyConfig(),
    notify_progress: Optional[ProgressSink] = log_progress,
    verif_path: str | Path | None = None,
) -> VerificationResult:
    """
    Read forecasts and observations and verify them, one chunk of lead times
    at a time:
      - observations are read once for [start_date, end_date + max lead time]
        and gross-error checked
      - each chunk is read, lagged, shifted, limited to cycles issued in
        [start_date, end_date], reduced to common cases, joined
        to the observations, checked against the ensemble spread and scored
      - chunks without any forecast/observation pair are skipped
      - the chunk results are concatenated and the run metadata attached

    Raises VerificationInputError for bad inputs and NoDataError when no chunk
    had data.
    """
    models = [fcst_model] if isinstance(fcst_model, str) else [str(m) for m in fcst_model]
    _check_inputs(models, cfg)

    start = parse_date(start_date)
    end = parse_date(end_date)
    lead_times = [int(x) for x in cfg.lead_time]

    last_obs = end + pd.Timedelta(hours=max(lead_times))
    obs = read_observations(
        parameter=parameter,
        stations=list(cfg.stations) if cfg.stations is not None else None,
        start=start,
        end=last_obs,
    )
    ok, errors = validate_observation_table(obs, parameter)
    if not ok:
        raise VerificationInputError(f"Observation table is invalid: {errors}")
    obs = quality_control_obs(obs, parameter, cfg.quality())

    chunks = split_lead_times(lead_times, cfg.num_iterations)
    chunk_results: List[VerificationResult] = []

    for chunk_index, chunk in enumerate(chunks, start=1):
        if notify_progress is not None:
            notify_progress(chunk_index, list(chunk), len(chunks))

        res = verify_chunk(chunk, models, parameter, obs, read_forecasts, start, end, cfg)
        if res is None:
            logger.warning("No forecast/observation pairs for lead times %s; skipping", list(chunk))
            continue
        chunk_results.append(res)

    result = aggregate_results(chunk_results, parameter, start_date, end_date)

    if verif_path is not None:
        save_point_verif(result, verif_path)

    return result
