from __future__ import annotations

import math
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

CoachAction = Literal[
    "food_added",
    "exercise_added",
    "measurement_added",
    "water_added",
    "advice",
    "chat",
    "food_options",
    "none",
]

OPTIONAL_NUTRIENTS: tuple[str, ...] = (
    "saturated_fat",
    "polyunsaturated_fat",
    "monounsaturated_fat",
    "trans_fat",
    "cholesterol",
    "sodium",
    "potassium",
    "dietary_fiber",
    "sugars",
    "vitamin_a",
    "vitamin_c",
    "calcium",
    "iron",
)


class CoachResponse(BaseModel):
    action: CoachAction
    response: str
    metadata: Optional[dict[str, Any]] = None


class FoodOption(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    name: str = Field(min_length=1)
    calories: float = 0
    protein: float = 0
    carbs: float = 0
    fat: float = 0
    serving_size: float = Field(default=1, gt=0)
    serving_unit: str = "serving"

    saturated_fat: Optional[float] = None
    polyunsaturated_fat: Optional[float] = None
    monounsaturated_fat: Optional[float] = None
    trans_fat: Optional[float] = None
    cholesterol: Optional[float] = None
    sodium: Optional[float] = None
    potassium: Optional[float] = None
    dietary_fiber: Optional[float] = None
    sugars: Optional[float] = None
    vitamin_a: Optional[float] = None
    vitamin_c: Optional[float] = None
    calcium: Optional[float] = None
    iron: Optional[float] = None


class PendingFoodChoice(BaseModel):
    """Food options offered to the user, waiting for a numeric pick."""

    model_config = ConfigDict(extra="ignore")

    foodOptions: list[FoodOption] = Field(min_length=1)
    mealType: str = "snacks"
    quantity: float = Field(default=1, gt=0)
    unit: str = "serving"
    entryDate: Optional[str] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> Optional["PendingFoodChoice"]:
        if not metadata or not metadata.get("foodOptions"):
            return None
        try:
            return cls.model_validate(dict(metadata))
        except ValidationError:
            return None


class MeasurementOutcome(BaseModel):
    type: str
    name: Optional[str] = None
    value: Optional[float] = None
    unit: Optional[str] = None
    ok: bool
    error: Optional[str] = None


def coerce_number(value: Any) -> Optional[float]:
    """Accept finite ints, floats and numeric strings; everything else is None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def food_option_from_raw(raw: Any) -> Optional[FoodOption]:
    if not isinstance(raw, Mapping):
        return None
    name = raw.get("food_name") or raw.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    macros = raw.get("macros") if isinstance(raw.get("macros"), Mapping) else {}

    def pick(field: str) -> Optional[float]:
        if field in macros:
            return coerce_number(macros.get(field))
        return coerce_number(raw.get(field))

    serving_size = coerce_number(raw.get("serving_size"))
    serving_unit = raw.get("serving_unit")
    return FoodOption(
        name=name.strip(),
        calories=pick("calories") or 0,
        protein=pick("protein") or 0,
        carbs=pick("carbs") or 0,
        fat=pick("fat") or 0,
        serving_size=serving_size if serving_size and serving_size > 0 else 1,
        serving_unit=serving_unit.strip() if isinstance(serving_unit, str) and serving_unit.strip() else "serving",
        **{field: pick(field) for field in OPTIONAL_NUTRIENTS},
    )
