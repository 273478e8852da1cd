import logging
import os
from dataclasses import dataclass
from datetime import date
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from sqlalchemy.orm import Session

from sparky.core.prompts import CategoryHint, render_intent_system_prompt
from sparky.db.models import CustomCategory
from sparky.services.history import recent_turns
from sparky.services.llm import LLMGateway, Message, parse_llm_json

logger = logging.getLogger("uvicorn.error")

HISTORY_CONTEXT_TURNS = int(os.getenv("SPARKY_HISTORY_CONTEXT_TURNS", "5"))


class ParseError(ValueError):
    pass


class IntentParseError(ParseError):
    def __init__(self, raw_text: str):
        super().__init__("Model output is not a JSON object")
        self.raw_text = raw_text


class IntentValidationError(ParseError):
    def __init__(self, intent: str, detail: str):
        super().__init__(f"Invalid data for intent {intent}: {detail}")
        self.intent = intent
        self.detail = detail


class FoodData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    food_name: str = Field(min_length=1)
    quantity: float = Field(default=1, gt=0)
    unit: str = "serving"
    meal_type: str = "snacks"
    serving_size: Optional[float] = None
    serving_unit: Optional[str] = None

    calories: Optional[float] = None
    protein: Optional[float] = None
    carbs: Optional[float] = None
    fat: Optional[float] = None
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

    @field_validator("food_name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("quantity", mode="before")
    @classmethod
    def default_quantity(cls, value: Any) -> Any:
        return 1 if value is None else value

    @field_validator("unit", mode="before")
    @classmethod
    def default_unit(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) and value.strip() else "serving"

    @field_validator("meal_type", mode="before")
    @classmethod
    def default_meal_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) and value.strip() else "snacks"


class ExerciseData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    exercise_name: str = Field(min_length=1)
    duration_minutes: Optional[float] = Field(default=None, gt=0)
    distance: Optional[float] = Field(default=None, ge=0)
    distance_unit: Optional[str] = None

    @field_validator("exercise_name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class MeasurementItem(BaseModel):
    # Loosely typed; each item is validated on its own when it is stored.
    model_config = ConfigDict(extra="ignore")

    type: Any = None
    value: Any = None
    unit: Any = None
    name: Any = None


class MeasurementData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    measurements: list[MeasurementItem] = Field(default_factory=list)

    @field_validator("measurements", mode="before")
    @classmethod
    def wrap_single(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value


class WaterData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    glasses_consumed: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def accept_quantity(cls, value: Any) -> Any:
        # First non-null of glasses_consumed, quantity.
        if not isinstance(value, dict):
            return value
        count = value.get("glasses_consumed")
        if count is None:
            count = value.get("quantity")
        return {**value, "glasses_consumed": count}


class _IntentBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entryDate: Optional[str] = None
    response: Optional[str] = None


class LogFoodIntent(_IntentBase):
    intent: Literal["log_food"]
    data: FoodData


class LogExerciseIntent(_IntentBase):
    intent: Literal["log_exercise"]
    data: ExerciseData


class LogMeasurementIntent(_IntentBase):
    intent: Literal["log_measurement"]
    data: MeasurementData


class LogWaterIntent(_IntentBase):
    intent: Literal["log_water"]
    data: WaterData = Field(default_factory=WaterData)


class AskQuestionIntent(_IntentBase):
    intent: Literal["ask_question"]
    data: dict[str, Any] = Field(default_factory=dict)


class ChatIntent(_IntentBase):
    intent: Literal["chat"] = "chat"
    data: dict[str, Any] = Field(default_factory=dict)


class UnknownIntent(_IntentBase):
    intent: str = ""


IntentResult = Annotated[
    Union[LogFoodIntent, LogExerciseIntent, LogMeasurementIntent, LogWaterIntent, AskQuestionIntent, ChatIntent],
    Field(discriminator="intent"),
]

_INTENT_ADAPTER: TypeAdapter = TypeAdapter(IntentResult)

KNOWN_INTENTS = frozenset({"log_food", "log_exercise", "log_measurement", "log_water", "ask_question", "chat"})


@dataclass(frozen=True)
class ImageInput:
    mime_type: str
    data_base64: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data_base64}"


def parse_intent_result(raw_text: str) -> Union[IntentResult, UnknownIntent]:
    """Parse model output into a typed intent.

    Raises IntentParseError when the text holds no JSON object and
    IntentValidationError when a known intent carries invalid data. Unknown
    intent names come back as UnknownIntent.
    """
    try:
        payload = parse_llm_json(raw_text)
    except ValueError as exc:
        raise IntentParseError(raw_text) from exc
    if not isinstance(payload, dict):
        raise IntentParseError(raw_text)

    intent = payload.get("intent")
    response = payload.get("response")
    if intent not in KNOWN_INTENTS:
        return UnknownIntent(
            intent=str(intent or ""),
            response=response if isinstance(response, str) else None,
        )

    normalized = dict(payload)
    if normalized.get("data") is None:
        normalized["data"] = {}
    try:
        return _INTENT_ADAPTER.validate_python(normalized)
    except ValidationError as exc:
        raise IntentValidationError(str(intent), str(exc)) from exc


def build_intent_messages(
    system_prompt: str,
    history: list[tuple[str, str]],
    text: str,
    image: Optional[ImageInput] = None,
) -> list[Message]:
    messages: list[Message] = [{"role": "system", "content": system_prompt}]
    for role, content in history:
        messages.append({"role": role, "content": content})

    parts: list[dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    if image is not None:
        parts.append({"type": "image_url", "image_url": {"url": image.data_url}})
    messages.append({"role": "user", "content": parts})
    return messages


def _category_hints(db: Session, user_id: int) -> list[CategoryHint]:
    rows = db.query(CustomCategory).filter(CustomCategory.user_id == user_id).order_by(CustomCategory.name.asc()).all()
    return [CategoryHint(name=row.name, measurement_type=row.measurement_type, frequency=row.frequency) for row in rows]


def extract_intent(
    gateway: LLMGateway,
    db: Session,
    *,
    user_id: int,
    service_config_id: int,
    text: str,
    today: date,
    image: Optional[ImageInput] = None,
    extra_instruction: Optional[str] = None,
    history_limit: int = HISTORY_CONTEXT_TURNS,
    transaction_id: str = "",
) -> Union[IntentResult, UnknownIntent]:
    system_prompt = render_intent_system_prompt(
        today=today,
        categories=_category_hints(db, user_id),
        extra_instruction=extra_instruction,
    )
    history = [(turn.message_type, turn.content) for turn in recent_turns(db, user_id, limit=history_limit)]
    messages = build_intent_messages(system_prompt, history, text, image)
    raw = gateway.complete(db, user_id, messages, service_config_id)
    try:
        result = parse_intent_result(raw)
    except IntentParseError:
        logger.info("intent_parse_fallback transaction_id=%s user_id=%s", transaction_id, user_id)
        return ChatIntent(response=raw)
    logger.info(
        "intent_extracted transaction_id=%s user_id=%s intent=%s", transaction_id, user_id, result.intent
    )
    return result
