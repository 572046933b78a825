"""
Shared pytest fixtures: synthetic station observations, ensemble forecasts
built around them and in-memory readers.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import pytest

from pointverif.core.align import join_to_fcst, merge_multimodel

PARAMETER = "S10m"
STATIONS = [1001, 1002, 1003, 1004, 1005]
FCDATES = pd.to_datetime(["2024-01-01 00:00", "2024-01-02 00:00"])
LEAD_TIMES = [0, 3, 6]


def make_obs(
    parameter: str = PARAMETER,
    stations: Sequence[int] = STATIONS,
    start: str = "2024-01-01 00:00",
    periods: int = 72,
    seed: int = 1,
) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    times = pd.date_range(start, periods=periods, freq="h")
    obs = pd.MultiIndex.from_product([list(stations), times], names=["SID", "validdate"]).to_frame(index=False)
    obs[parameter] = rng.uniform(0.0, 8.0, len(obs)).round(2)
    return obs


def make_fcst(
    mname: str,
    obs: pd.DataFrame,
    num_members: int,
    parameter: str = PARAMETER,
    fcdates: Sequence[pd.Timestamp] = FCDATES,
    lead_times: Sequence[int] = LEAD_TIMES,
    stations: Optional[Sequence[int]] = None,
    spread: float = 1.0,
    seed: int = 0,
    units: str = "m/s",
) -> pd.DataFrame:
    """Ensemble around the observed value: obs + N(0, spread) per member, floored at 0."""
    rng = np.random.default_rng(seed)
    stations = sorted(obs["SID"].unique()) if stations is None else list(stations)
    rows = pd.MultiIndex.from_product(
        [stations, list(fcdates), list(lead_times)], names=["SID", "fcdate", "lead_time"]
    ).to_frame(index=False)

    valid = rows["fcdate"] + pd.to_timedelta(rows["lead_time"], unit="h")
    truth = rows.assign(validdate=valid).merge(obs, on=["SID", "validdate"], how="left")[parameter].to_numpy()

    for m in range(num_members):
        rows[f"{mname}_mbr{m:03d}"] = np.clip(truth + rng.normal(0.0, spread, len(rows)), 0.0, None)
    rows["units"] = units
    return rows


class FakeForecastReader:
    """Serves pre-built tables, honouring lead times, stations and the lagged cycle window."""

    def __init__(self, tables: Dict[str, pd.DataFrame]) -> None:
        self.tables = tables
        self.calls: List[dict] = []

    def __call__(self, *, models, parameter, lead_times, members, lags, cycle_frequency, stations, start, end):
        self.calls.append(
            {
                "models": list(models),
                "parameter": parameter,
                "lead_times": list(lead_times),
                "lags": {m: list(v) for m, v in lags.items()},
                "cycle_frequency": cycle_frequency,
                "stations": stations,
                "start": start,
                "end": end,
            }
        )
        out = {}
        for m in models:
            df = self.tables[m]
            model_lags = lags.get(m, [0])
            first = start - pd.Timedelta(hours=max(model_lags))
            last = end - pd.Timedelta(hours=min(model_lags))
            keep = df["lead_time"].isin(lead_times) & (df["fcdate"] >= first) & (df["fcdate"] <= last)
            if stations is not None:
                keep &= df["SID"].isin(stations)
            out[m] = df[keep].reset_index(drop=True)
        return out


class FakeObservationReader:
    def __init__(self, obs: pd.DataFrame) -> None:
        self.obs = obs
        self.calls: List[dict] = []

    def __call__(self, *, parameter, stations, start, end):
        self.calls.append({"parameter": parameter, "stations": stations, "start": start, "end": end})
        keep = (self.obs["validdate"] >= start) & (self.obs["validdate"] <= end)
        if stations is not None:
            keep &= self.obs["SID"].isin(stations)
        return self.obs[keep].reset_index(drop=True)


class RecordingProgress:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def __call__(self, chunk_index, chunk_contents, total_chunks) -> None:
        self.calls.append((chunk_index, list(chunk_contents), total_chunks))


@pytest.fixture
def obs() -> pd.DataFrame:
    return make_obs()


@pytest.fixture
def fcst_tables(obs) -> Dict[str, pd.DataFrame]:
    """Three models with different member counts."""
    return {
        "A": make_fcst("A", obs, num_members=3, seed=10),
        "B": make_fcst("B", obs, num_members=2, seed=20),
        "C": make_fcst("C", obs, num_members=4, seed=30),
    }


@pytest.fixture
def joined_fcst(fcst_tables, obs) -> Dict[str, pd.DataFrame]:
    """Forecast tables with validdate derived and the observation column joined."""
    return join_to_fcst(merge_multimodel(fcst_tables), obs, PARAMETER)


@pytest.fixture
def fcst_reader(fcst_tables) -> FakeForecastReader:
    return FakeForecastReader(fcst_tables)


@pytest.fixture
def obs_reader(obs) -> FakeObservationReader:
    return FakeObservationReader(obs)


@pytest.fixture
def progress() -> RecordingProgress:
    return RecordingProgress()
