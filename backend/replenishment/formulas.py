"""
Reorder formula parameters.

Each reorder rule carries a ``reorder_formula`` kind plus a JSON parameter
payload. The payload is validated against the variant for its kind when a
rule is written, so the decision engine never sees malformed parameters.

  fixed     — optional explicit ``order_quantity``
  dynamic   — no parameters (demand × (lead time + buffer) + safety stock)
  seasonal  — optional per-month multipliers overriding the detected pattern
  eoq       — annual demand, ordering cost and holding cost (all required)
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

FORMULA_KINDS = ("fixed", "dynamic", "seasonal", "eoq")
PRIORITY_LEVELS = ("low", "medium", "high", "critical")

SEASONAL_MULTIPLIER_MIN = 0.1
SEASONAL_MULTIPLIER_MAX = 10.0


class FixedFormula(BaseModel):
    kind: Literal["fixed"] = "fixed"
    order_quantity: float | None = Field(default=None, gt=0)

    model_config = {"extra": "forbid"}


class DynamicFormula(BaseModel):
    kind: Literal["dynamic"] = "dynamic"

    model_config = {"extra": "forbid"}


class SeasonalFormula(BaseModel):
    kind: Literal["seasonal"] = "seasonal"
    monthly_multipliers: dict[int, float] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @field_validator("monthly_multipliers")
    @classmethod
    def _check_months(cls, value: dict[int, float]) -> dict[int, float]:
        for month, multiplier in value.items():
            if not 1 <= month <= 12:
                raise ValueError(f"month must be 1-12, got {month}")
            if not SEASONAL_MULTIPLIER_MIN <= multiplier <= SEASONAL_MULTIPLIER_MAX:
                raise ValueError(
                    f"multiplier for month {month} must be between "
                    f"{SEASONAL_MULTIPLIER_MIN} and {SEASONAL_MULTIPLIER_MAX}"
                )
        return value


class EOQFormula(BaseModel):
    kind: Literal["eoq"] = "eoq"
    annual_demand: float = Field(gt=0)
    ordering_cost: float = Field(gt=0)
    holding_cost: float = Field(gt=0)

    model_config = {"extra": "forbid"}


ReorderFormula = Annotated[
    Union[FixedFormula, DynamicFormula, SeasonalFormula, EOQFormula],
    Field(discriminator="kind"),
]

_formula_adapter = TypeAdapter(ReorderFormula)


def parse_formula(kind: str, params: dict | None) -> ReorderFormula:
    """Validate ``params`` as the variant for ``kind``.

    Raises pydantic.ValidationError (a ValueError) on bad input.
    """
    if kind not in FORMULA_KINDS:
        raise ValueError(f"Unknown reorder formula: {kind!r}")
    payload = dict(params or {})
    payload["kind"] = kind
    return _formula_adapter.validate_python(payload)


def dump_formula(formula: ReorderFormula) -> dict:
    """JSON-safe parameter payload (without the kind tag) for storage."""
    return formula.model_dump(mode="json", exclude={"kind"}, exclude_none=True)
