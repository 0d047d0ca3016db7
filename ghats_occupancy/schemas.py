"""
Pandera DataFrame schemas for the stage hand-off files.

Each stage writes a CSV that the next stage reads back. The schemas below
check both structure and basic data quality (value ranges, id columns
present) at those hand-off points.

Usage:
    from ghats_occupancy.schemas import ChecklistSchema
    ChecklistSchema.validate(df)  # raises pa.errors.SchemaError on failure
"""

import pandera as pa
from pandera import Column, Check, DataFrameSchema


# ── Cleaned, zero-filled checklists ─────────────────────────────────────

ChecklistSchema = DataFrameSchema(
    columns={
        "sampling_event_identifier": Column(str, nullable=False),
        "scientific_name": Column(str, nullable=False),
        "locality_id": Column(str, nullable=False),
        "latitude": Column(float, Check.in_range(-90.0, 90.0), nullable=False),
        "longitude": Column(float, Check.in_range(-180.0, 180.0), nullable=False),
        "pres_abs": Column(int, Check.isin([0, 1]), nullable=False, coerce=True),
        "duration_minutes": Column(float, Check.greater_than_or_equal_to(0.0),
                                   nullable=True, coerce=True),
        "effort_distance_km": Column(float, Check.greater_than_or_equal_to(0.0),
                                     nullable=True, coerce=True),
        "julian_date": Column(int, Check.in_range(1, 366), nullable=False, coerce=True),
    },
    strict=False,
    coerce=False,
    name="ChecklistSchema",
)


# ── Observer expertise scores ───────────────────────────────────────────

ExpertiseScoreSchema = DataFrameSchema(
    columns={
        "observer": Column(str, nullable=False, unique=True),
        "score": Column(float, Check.greater_than(0.0), nullable=False),
    },
    strict=False,
    coerce=False,
    name="ExpertiseScoreSchema",
)


# ── Thinned checklists with buffer covariates ───────────────────────────

SiteCovariateSchema = DataFrameSchema(
    columns={
        "locality_id": Column(str, nullable=False),
        "scientific_name": Column(str, nullable=False),
        "pres_abs": Column(int, Check.isin([0, 1]), nullable=False, coerce=True),
        "expertise": Column(float, nullable=False),
        "bio_1": Column(float, nullable=True),
        "bio_12": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
        r"lc_0\d": Column(float, Check.in_range(0.0, 1.0), nullable=True, regex=True),
    },
    strict=False,
    coerce=False,
    name="SiteCovariateSchema",
)


# ── Model-averaged estimates ────────────────────────────────────────────

ModelEstimateSchema = DataFrameSchema(
    columns={
        "predictor": Column(str, nullable=False, unique=True),
        "coefficient": Column(float, nullable=False),
        "se": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
        "ci_lower": Column(float, nullable=True),
        "ci_upper": Column(float, nullable=True),
        "z_value": Column(float, nullable=True),
        "p_value": Column(float, Check.in_range(0.0, 1.0), nullable=True),
    },
    strict=True,
    coerce=False,
    name="ModelEstimateSchema",
)


# ── Cumulative importance ───────────────────────────────────────────────

ImportanceSchema = DataFrameSchema(
    columns={
        "predictor": Column(str, nullable=False, unique=True),
        # Weights sum to 1, allow float round-off.
        "importance": Column(float, Check.in_range(0.0, 1.0 + 1e-9), nullable=False),
        "n_models": Column(int, Check.greater_than_or_equal_to(0), nullable=False,
                           coerce=True),
    },
    strict=False,
    coerce=False,
    name="ImportanceSchema",
)


# ── Goodness of fit ─────────────────────────────────────────────────────

GoodnessOfFitSchema = DataFrameSchema(
    columns={
        "scientific_name": Column(str, nullable=False, unique=True),
        "chi_square": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
        "p_value": Column(float, Check.in_range(0.0, 1.0), nullable=True),
        "c_hat": Column(float, nullable=True),
        "n_simulations": Column(int, Check.greater_than_or_equal_to(0), nullable=False,
                                coerce=True),
    },
    strict=False,
    coerce=False,
    name="GoodnessOfFitSchema",
)


# ── Convenience validation function ─────────────────────────────────────

def validate_schema(df, schema, step_name, strict=False):
    """Validate a DataFrame against a Pandera schema.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to validate.
    schema : pa.DataFrameSchema
        Schema to validate against.
    step_name : str
        Pipeline step name for error messages.
    strict : bool
        If True, raise on failure. If False, return warnings list.

    Returns
    -------
    list[str]
        Validation warning messages (empty if all pass).

    Raises
    ------
    ValueError
        Only if strict=True and validation fails.
    """
    if df is None:
        msg = f"[{step_name}] DataFrame is None"
        if strict:
            raise ValueError(msg)
        return [msg]

    if len(df) == 0:
        msg = f"[{step_name}] DataFrame is empty (0 rows)"
        if strict:
            raise ValueError(msg)
        return [msg]

    warnings_list = []
    try:
        schema.validate(df, lazy=True)
    except pa.errors.SchemaErrors as exc:
        for failure in exc.failure_cases.itertuples():
            warnings_list.append(
                f"[{step_name}] Schema violation: "
                f"column='{failure.column}' check='{failure.check}' "
                f"failure_case={failure.failure_case}"
            )
        if strict:
            raise ValueError(
                f"[{step_name}] {schema.name} failed with "
                f"{len(warnings_list)} errors"
            ) from exc

    return warnings_list
