import pandas as pd

from pointverif.core.tables import member_columns


def validate_forecast_table(df: pd.DataFrame) -> tuple[bool, list]:
    """
    Checks that a forecast table has the key columns and at least one member column.
    Returns a tuple (ok, list_of_errors).
    """
    errors = []

    for col in ["SID", "lead_time"]:
        if col not in df.columns:
            errors.append(f"Missing column: {col}")

    if "fcdate" not in df.columns and "validdate" not in df.columns:
        errors.append("Missing column: fcdate or validdate")

    if not member_columns(df):
        errors.append("No member columns (expected names containing '_mbr')")

    # lead times must be whole hours
    if "lead_time" in df.columns:
        lt = pd.to_numeric(df["lead_time"], errors="coerce")
        if lt.isna().any():
            errors.append("Some lead_time values are missing or not numeric.")

    return len(errors) == 0, errors


def validate_observation_table(df: pd.DataFrame, parameter: str) -> tuple[bool, list]:
    """
    Checks that an observation table has SID, validdate and the parameter column.
    Returns a tuple (ok, list_of_errors).
    """
    errors = []
    for col in ["SID", "validdate", parameter]:
        if col not in df.columns:
            errors.append(f"Missing column: {col}")

    if "validdate" in df.columns and pd.to_datetime(df["validdate"], errors="coerce").isna().any():
        errors.append("Some rows have missing or invalid validdate values.")

    return len(errors) == 0, errors
