from __future__ import annotations

import logging
from typing import Mapping, Optional, Protocol, Sequence

import pandas as pd

from pointverif.core.tables import ForecastInput

logger = logging.getLogger(__name__)


class ObservationReader(Protocol):
    """Returns observations with columns SID, validdate and `parameter`."""

    def __call__(
        self,
        *,
        parameter: str,
        stations: Optional[Sequence[object]],
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> pd.DataFrame: ...


class ForecastReader(Protocol):
    """
    Returns forecast tables for the requested models, either as a mapping
    {mname: table} or as one table with an `mname` column.

    `lags` maps a model name to the lags (hours) of extra cycles to read: a lag
    of L means the cycle issued L hours before each verified cycle.
    """

    def __call__(
        self,
        *,
        models: Sequence[str],
        parameter: str,
        lead_times: Sequence[int],
        members: Optional[Sequence[int]],
        lags: Mapping[str, Sequence[int]],
        cycle_frequency: str,
        stations: Optional[Sequence[object]],
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> ForecastInput: ...


class ProgressSink(Protocol):
    def __call__(self, chunk_index: int, chunk_contents: Sequence[int], total_chunks: int) -> None: ...


def log_progress(chunk_index: int, chunk_contents: Sequence[int], total_chunks: int) -> None:
    lead = " ".join(str(x) for x in chunk_contents)
    logger.info("Lead time: %s (Iteration %d of %d)", lead, chunk_index, total_chunks)
