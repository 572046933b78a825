import numpy as np
import pandas as pd
import pytest

from conftest import PARAMETER, make_fcst
from pointverif.core.align import (
    common_cases,
    filter_cycles,
    filter_lead_times,
    join_to_fcst,
    lag_forecast,
    merge_multimodel,
    normalize_units,
    scale_point_forecast,
    shift_forecast,
)
from pointverif.core.errors import VerificationInputError
from pointverif.core.tables import add_cycle_columns, member_columns

KEY_COLS = ["SID", "fcdate", "lead_time", "validdate", "fcst_cycle"]


def _cycles_table(hours, lead_times=(0, 6, 12)):
    fcdates = [pd.Timestamp("2024-01-01") + pd.Timedelta(hours=h) for h in hours]
    rows = pd.MultiIndex.from_product([[1], fcdates, list(lead_times)], names=["SID", "fcdate", "lead_time"])
    df = rows.to_frame(index=False)
    df["m_mbr000"] = np.arange(len(df), dtype=float)
    df["m_mbr001"] = np.arange(len(df), dtype=float) + 0.5
    return df


@pytest.mark.unit
class TestMergeMultimodel:
    def test_mapping_keeps_models_apart(self, fcst_tables):
        fcst = merge_multimodel(fcst_tables)
        assert list(fcst) == ["A", "B", "C"]
        assert len(member_columns(fcst["B"])) == 2
        assert "validdate" in fcst["A"].columns

    def test_long_table_is_split_by_mname(self, fcst_tables):
        long = pd.concat([df.assign(mname=m) for m, df in fcst_tables.items()], ignore_index=True)
        fcst = merge_multimodel(long)
        assert list(fcst) == ["A", "B", "C"]
        # member columns of the other models are all-NaN and dropped
        assert member_columns(fcst["A"]) == ["A_mbr000", "A_mbr001", "A_mbr002"]

    def test_multimodel_pools_members(self, fcst_tables):
        fcst = merge_multimodel(fcst_tables, multimodel={"AB": ["A", "B"]})
        assert len(member_columns(fcst["AB"])) == 5
        assert "AB_A_mbr000" in fcst["AB"].columns
        assert fcst["AB"]["units"].unique().tolist() == ["m/s"]

    def test_multimodel_unknown_model(self, fcst_tables):
        with pytest.raises(VerificationInputError):
            merge_multimodel(fcst_tables, multimodel={"AX": ["A", "X"]})


@pytest.mark.unit
class TestLagForecast:
    def test_child_members_join_next_parent(self):
        df = _cycles_table([6, 12])
        out = lag_forecast(df, None, [12], direction=1)

        assert out["fcst_cycle"].unique().tolist() == ["12"]
        assert "m_mbr000_lag6h" in out.columns
        # parent lead 0 (valid 12z) gets the child lead 6 member value
        row = out[out["lead_time"] == 0].iloc[0]
        child = add_cycle_columns(df)
        expected = child[(child["fcst_cycle"] == "06") & (child["lead_time"] == 6)]["m_mbr000"].iloc[0]
        assert row["m_mbr000_lag6h"] == expected

    def test_direction_minus_one_uses_previous_parent(self):
        df = _cycles_table([0, 6])
        out = lag_forecast(df, None, [0], direction=-1)
        assert "m_mbr000_lag-6h" in out.columns
        # child valid times 06, 12, 18; parent valid times 00, 06, 12
        assert out["m_mbr000_lag-6h"].notna().sum() == 2

    def test_nearest_parent_prefers_later_on_tie(self):
        df = _cycles_table([0, 6, 12])
        out = lag_forecast(df, None, [0, 12], direction=0)
        assert "m_mbr000_lag6h" in out.columns
        assert "m_mbr000_lag-6h" not in out.columns

    def test_collection_only_lags_listed_models(self, fcst_tables):
        fcst = merge_multimodel({"m": _cycles_table([6, 12]), "A": fcst_tables["A"]})
        out = lag_forecast(fcst, ["m"], [12])
        assert out["A"] is fcst["A"]
        assert "m_mbr001_lag6h" in out["m"].columns

    def test_parent_cycles_required(self):
        with pytest.raises(VerificationInputError, match="parent_cycles"):
            lag_forecast(_cycles_table([6, 12]), ["m"], None)

    def test_unknown_lag_model(self, fcst_tables):
        with pytest.raises(VerificationInputError):
            lag_forecast(merge_multimodel(fcst_tables), ["X"], [0])


@pytest.mark.unit
class TestShiftForecast:
    def test_zero_shift_is_identity(self):
        df = _cycles_table([0, 12])
        out = shift_forecast(df, 0)
        pd.testing.assert_frame_equal(out, add_cycle_columns(df))

    def test_shift_moves_cycle_and_lead_time(self):
        df = _cycles_table([12])
        out = shift_forecast(df, 6)
        base = add_cycle_columns(df)
        assert (out["fcdate"] == base["fcdate"] - pd.Timedelta(hours=6)).all()
        assert out["lead_time"].tolist() == [6, 12, 18]
        assert out["fcst_cycle"].unique().tolist() == ["06"]
        assert (out["validdate"] == base["validdate"]).all()

    def test_shift_and_back_restores_labels(self):
        df = _cycles_table([0, 12])
        out = shift_forecast(shift_forecast(df, 6), -6)
        pd.testing.assert_frame_equal(out[KEY_COLS], add_cycle_columns(df)[KEY_COLS])

    def test_negative_lead_times(self):
        df = _cycles_table([12])
        assert shift_forecast(df, -6)["lead_time"].tolist() == [0, 6]
        kept = shift_forecast(df, -6, drop_negative_lead_times=False)
        assert kept["lead_time"].tolist() == [-6, 0, 6]

    def test_keep_unshifted(self, fcst_tables):
        fcst = merge_multimodel(fcst_tables)
        out = shift_forecast(fcst, {"A": 3}, keep_unshifted=True)
        assert set(out) == {"A", "A_unshifted", "B", "C"}
        pd.testing.assert_frame_equal(out["A_unshifted"], fcst["A"])

    def test_unknown_shift_model(self, fcst_tables):
        with pytest.raises(VerificationInputError):
            shift_forecast(merge_multimodel(fcst_tables), {"X": 3})


@pytest.mark.unit
class TestCasesAndJoin:
    def test_filter_lead_times(self, fcst_tables):
        out = filter_lead_times(merge_multimodel(fcst_tables), [3])
        assert all(df["lead_time"].unique().tolist() == [3] for df in out.values())

    def test_common_cases(self, obs, fcst_tables):
        tables = dict(fcst_tables)
        b = tables["B"]
        tables["B"] = b[~((b["SID"] == 1005) & (b["lead_time"] == 3))]
        out = common_cases(merge_multimodel(tables))

        sizes = {m: len(df) for m, df in out.items()}
        assert len(set(sizes.values())) == 1
        assert sizes["A"] == len(fcst_tables["A"]) - 2
        assert not ((out["C"]["SID"] == 1005) & (out["C"]["lead_time"] == 3)).any()

    def test_common_cases_single_model_untouched(self, fcst_tables):
        fcst = merge_multimodel({"A": fcst_tables["A"]})
        assert common_cases(fcst) is fcst

    def test_common_cases_with_empty_model(self, fcst_tables):
        fcst = merge_multimodel({"A": fcst_tables["A"], "E": fcst_tables["B"].iloc[0:0]})
        out = common_cases(fcst)
        assert set(out) == {"A", "E"}
        assert all(df.empty for df in out.values())

    def test_filter_cycles_after_shift(self, fcst_tables):
        fcst = shift_forecast(merge_multimodel({"A": fcst_tables["A"]}), {"A": 6})
        out = filter_cycles(fcst, pd.Timestamp("2024-01-01"), pd.Timestamp("2024-01-02"))
        # the 2024-01-01 00z run now reads as issued at 2023-12-31 18z
        assert out["A"]["fcdate"].drop_duplicates().tolist() == [pd.Timestamp("2024-01-01 18:00")]
        assert len(out["A"]) == len(fcst_tables["A"]) // 2

    def test_filter_cycles_bounds_are_inclusive(self, fcst_tables):
        fcst = merge_multimodel(fcst_tables)
        out = filter_cycles(fcst, pd.Timestamp("2024-01-01"), pd.Timestamp("2024-01-02"))
        assert {m: len(df) for m, df in out.items()} == {m: len(df) for m, df in fcst.items()}

    def test_join_to_fcst_inner_join(self, obs, fcst_tables):
        obs_part = obs[obs["SID"] != 1001]
        out = join_to_fcst(merge_multimodel(fcst_tables), obs_part, PARAMETER)
        assert 1001 not in out["A"]["SID"].unique()
        assert out["A"][PARAMETER].notna().all()

    def test_join_to_fcst_needs_parameter(self, obs, fcst_tables):
        with pytest.raises(VerificationInputError, match="No column found for T2m"):
            join_to_fcst(merge_multimodel(fcst_tables), obs, "T2m")


@pytest.mark.unit
class TestUnits:
    def test_pmsl_pa_to_hpa(self, obs):
        df = make_fcst("A", obs, num_members=2, units="Pa")
        out = normalize_units({"A": df}, "Pmsl")
        assert out["A"]["units"].unique().tolist() == ["hPa"]
        np.testing.assert_allclose(out["A"]["A_mbr000"], df["A_mbr000"] * 0.01)

    def test_other_parameters_untouched(self, obs):
        df = make_fcst("A", obs, num_members=2, units="Pa")
        assert normalize_units(df, "T2m") is df

    def test_pmsl_already_hpa(self, obs):
        df = make_fcst("A", obs, num_members=2, units="hPa")
        out = normalize_units(df, "Pmsl")
        pd.testing.assert_frame_equal(out, df)

    def test_scale_additive(self, obs):
        df = make_fcst("A", obs, num_members=1, units="K")
        out = scale_point_forecast(df, -273.15, new_units="degC")
        np.testing.assert_allclose(out["A_mbr000"], df["A_mbr000"] - 273.15)
        assert out["units"].iloc[0] == "degC"
