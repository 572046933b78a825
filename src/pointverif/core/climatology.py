from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from pointverif.core.errors import VerificationInputError
from pointverif.core.tables import ForecastInput, is_collection, require_column

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberClimatology:
    """Use one member of one model as the reference ("truth") series."""
    eps_model: str
    member: Union[int, str]


ClimatologySpec = Union[str, MemberClimatology, Mapping[str, object], pd.DataFrame]


def exceedance_frequency(values: np.ndarray, threshold: float) -> float:
    v = np.asarray(values, dtype=float)
    v = v[np.isfinite(v)]
    if v.size == 0:
        return float("nan")
    return float(np.mean(v > threshold))


def _as_key(key: object) -> Tuple:
    return key if isinstance(key, tuple) else (key,)


def _member_column(df: pd.DataFrame, eps_model: str, member: Union[int, str]) -> str:
    if isinstance(member, str) and member in df.columns:
        return member
    try:
        num = int(member)
    except (TypeError, ValueError):
        raise VerificationInputError(f"Climatology member '{member}' not found for model '{eps_model}'")
    pattern = re.compile(rf"_mbr0*{num}$")
    cols = [c for c in df.columns if pattern.search(str(c))]
    if not cols:
        raise VerificationInputError(f"Climatology member {num} not found for model '{eps_model}'")
    return cols[0]


class ClimatologyResolver:
    """
    Reference exceedance probability per threshold and verification group.

    Modes:
      - "sample": frequency of observed exceedance in the group itself
      - "member": frequency of exceedance of one member of one model, same group
      - "table":  values from a supplied table (threshold[, lead_time] -> climatology)
    """

    def __init__(
        self,
        mode: str,
        groupings: Sequence[str] = ("lead_time",),
        member_values: Optional[Dict[Tuple, np.ndarray]] = None,
        table: Optional[pd.DataFrame] = None,
    ) -> None:
        if mode not in ("sample", "member", "table"):
            raise VerificationInputError(f"Unknown climatology mode '{mode}'")
        self.mode = mode
        self.groupings = list(groupings)
        self._member_values = member_values or {}
        self._table = table

    @classmethod
    def from_spec(
        cls,
        climatology: ClimatologySpec,
        fcst: ForecastInput,
        groupings: Sequence[str] = ("lead_time",),
    ) -> "ClimatologyResolver":
        groupings = list(groupings)

        if isinstance(climatology, str):
            if climatology != "sample":
                raise VerificationInputError(f"Unknown climatology '{climatology}'. Use 'sample', a member or a table.")
            return cls("sample", groupings)

        if isinstance(climatology, pd.DataFrame):
            return cls("table", groupings, table=_check_table(climatology, groupings))

        if isinstance(climatology, Mapping):
            if not {"eps_model", "member"}.issubset(climatology.keys()):
                raise VerificationInputError("Member climatology needs 'eps_model' and 'member'")
            climatology = MemberClimatology(str(climatology["eps_model"]), climatology["member"])

        if isinstance(climatology, MemberClimatology):
            tables = fcst if is_collection(fcst) else {climatology.eps_model: fcst}
            if climatology.eps_model not in tables:
                raise VerificationInputError(f"Climatology model '{climatology.eps_model}' not in forecast data")
            df = tables[climatology.eps_model]
            col = _member_column(df, climatology.eps_model, climatology.member)
            logger.debug("climatology: using %s of %s as reference", col, climatology.eps_model)
            for g in groupings:
                require_column(df, g)
            member_values = {
                _as_key(key): g[col].to_numpy(dtype=float)
                for key, g in df.groupby(groupings, dropna=False, sort=False)
            }
            return cls("member", groupings, member_values=member_values)

        raise VerificationInputError(f"Unsupported climatology of type {type(climatology).__name__}")

    def probability(self, threshold: float, group_key: Tuple, obs_values: np.ndarray) -> float:
        if self.mode == "sample":
            return exceedance_frequency(obs_values, threshold)
        if self.mode == "member":
            values = self._member_values.get(_as_key(group_key))
            if values is None:
                return float("nan")
            return exceedance_frequency(values, threshold)
        return self._lookup(threshold, _as_key(group_key))

    def _lookup(self, threshold: float, group_key: Tuple) -> float:
        tab = self._table
        rows = tab[np.isclose(tab["threshold"].astype(float), float(threshold))]
        if "lead_time" in tab.columns:
            lt = group_key[self.groupings.index("lead_time")]
            rows = rows[rows["lead_time"] == lt]
        if rows.empty:
            return float("nan")
        return float(rows["climatology"].iloc[0])


def _check_table(tab: pd.DataFrame, groupings: Sequence[str]) -> pd.DataFrame:
    for col in ("threshold", "climatology"):
        if col not in tab.columns:
            raise VerificationInputError(f"Climatology table must have a '{col}' column")
    if "lead_time" in tab.columns and "lead_time" not in groupings:
        raise VerificationInputError("Climatology table is conditioned on lead_time but lead_time is not a grouping")
    probs = tab["climatology"].dropna()
    if ((probs < 0) | (probs > 1)).any():
        raise VerificationInputError("Climatology probabilities must lie in [0, 1]")
    return tab.reset_index(drop=True)
