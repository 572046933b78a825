from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from pointverif.core.errors import NoDataError
from pointverif.core.tables import UNSHIFTED_SUFFIX

logger = logging.getLogger(__name__)

TABLE_NAMES = ("ens_summary_scores", "ens_threshold_scores", "det_summary_scores")


@dataclass(frozen=True)
class RunMetadata:
    parameter: str
    start_date: str
    end_date: str
    num_stations: int


@dataclass(frozen=True)
class VerificationResult:
    ens_summary_scores: pd.DataFrame
    ens_threshold_scores: pd.DataFrame
    det_summary_scores: pd.DataFrame
    # stations that contributed scored cases (per chunk before aggregation)
    num_stations: int = 0
    metadata: Optional[RunMetadata] = None

    def tables(self) -> Dict[str, pd.DataFrame]:
        return {name: getattr(self, name) for name in TABLE_NAMES}


def canonical_model_name(mname: str) -> str:
    mname = str(mname)
    if mname.endswith(UNSHIFTED_SUFFIX):
        return mname[: -len(UNSHIFTED_SUFFIX)]
    return mname


def _concat(frames: List[pd.DataFrame]) -> pd.DataFrame:
    frames = [f for f in frames if f is not None and not f.empty]
    if not frames:
        return pd.DataFrame()
    out = pd.concat(frames, ignore_index=True)
    if "mname" in out.columns:
        out["mname"] = out["mname"].map(canonical_model_name)
    return out


def aggregate_results(
    chunk_results: Sequence[Optional[VerificationResult]],
    parameter: str,
    start_date: object,
    end_date: object,
) -> VerificationResult:
    """
    Concatenate per-chunk score tables, fold `<model>_unshifted` back onto the
    model name and attach the run metadata.
    """
    results = [r for r in chunk_results if r is not None]
    if not results:
        raise NoDataError("No data to verify")

    num_stations = max(int(r.num_stations) for r in results)
    tables = {name: _concat([getattr(r, name) for r in results]) for name in TABLE_NAMES}

    meta = RunMetadata(
        parameter=str(parameter),
        start_date=str(start_date),
        end_date=str(end_date),
        num_stations=num_stations,
    )
    logger.info(
        "Aggregated %d chunks: %d summary rows, %d threshold rows, %d member rows (%d stations)",
        len(results),
        len(tables["ens_summary_scores"]),
        len(tables["ens_threshold_scores"]),
        len(tables["det_summary_scores"]),
        num_stations,
    )
    return VerificationResult(**tables, num_stations=num_stations, metadata=meta)


def save_point_verif(result: VerificationResult, verif_path: str | Path) -> Path:
    """Write each score table as CSV and the run metadata as JSON into `verif_path`."""
    outdir = Path(verif_path)
    outdir.mkdir(parents=True, exist_ok=True)

    for name, df in result.tables().items():
        df = df.copy()
        if "rank_histogram" in df.columns:
            df["rank_histogram"] = df["rank_histogram"].map(lambda r: ";".join(str(int(x)) for x in r))
        df.to_csv(outdir / f"{name}.csv", index=False)

    if result.metadata is not None:
        (outdir / "run_metadata.json").write_text(json.dumps(asdict(result.metadata), indent=2), encoding="utf-8")

    logger.info("Saved verification to %s", outdir)
    return outdir
