import logging
from datetime import date
from typing import Any, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sparky.core.contracts import (
    OPTIONAL_NUTRIENTS,
    CoachResponse,
    FoodOption,
    PendingFoodChoice,
    food_option_from_raw,
)
from sparky.db.models import Food, FoodEntry
from sparky.services.intent import FoodData
from sparky.services.llm import parse_llm_json

logger = logging.getLogger("uvicorn.error")

MEAL_TYPES = ("breakfast", "lunch", "dinner", "snacks")
BROAD_MATCH_LIMIT = 3


def normalize_meal_type(meal_type: Optional[str]) -> str:
    value = (meal_type or "").strip().lower()
    if value == "snack":
        return "snacks"
    return value if value in MEAL_TYPES else "snacks"


def estimate_calories(calories: Optional[float], quantity: float, serving_size: Optional[float]) -> int:
    return round((calories or 0) * quantity / (serving_size or 100))


def _added_message(meal_type: str, entry_date: str, name: str, quantity: float, unit: str, calories: int, protein: Optional[float]) -> str:
    return (
        f"**Added to your {meal_type} on {entry_date}!**\n\n"
        f"{name} ({quantity:g}{unit})\n"
        f"~{calories} calories\n\n"
        f"Great choice! This adds {round(protein or 0)}g protein to your day."
    )


def find_food(db: Session, user_id: int, food_name: str) -> Optional[Food]:
    """Exact match in the user's own foods wins; otherwise a broad contains search."""
    name = food_name.strip()
    exact = (
        db.query(Food)
        .filter(Food.user_id == user_id, func.lower(Food.name) == name.lower())
        .order_by(Food.id.asc())
        .first()
    )
    if exact:
        return exact

    broad = (
        db.query(Food)
        .filter(or_(Food.user_id == user_id, Food.user_id.is_(None)), Food.name.ilike(f"%{name}%"))
        .order_by(Food.user_id.is_(None), Food.id.asc())
        .limit(BROAD_MATCH_LIMIT)
        .all()
    )
    return broad[0] if broad else None


def process_food_input(db: Session, user_id: int, data: FoodData, entry_date: str) -> CoachResponse:
    meal_type = normalize_meal_type(data.meal_type)
    try:
        food = find_food(db, user_id, data.food_name)
    except SQLAlchemyError:
        logger.exception("food_lookup_failed user_id=%s food=%s", user_id, data.food_name)
        return CoachResponse(action="none", response="Sorry, I had trouble accessing the food database. Please try again.")

    if not food:
        logger.info("food_not_found user_id=%s food=%s", user_id, data.food_name)
        return CoachResponse(
            action="none",
            response=f'Food "{data.food_name}" not found in database.',
            metadata={
                "is_fallback": True,
                "foodName": data.food_name,
                "unit": data.unit,
                "mealType": meal_type,
                "quantity": data.quantity,
                "entryDate": entry_date,
            },
        )

    try:
        db.add(
            FoodEntry(
                user_id=user_id,
                food_id=food.id,
                meal_type=meal_type,
                quantity=data.quantity,
                unit=data.unit,
                entry_date=date.fromisoformat(entry_date),
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("food_entry_insert_failed user_id=%s food_id=%s", user_id, food.id)
        return CoachResponse(action="none", response="Sorry, I couldn't add that to your diary. Please try again.")

    calories = estimate_calories(food.calories, data.quantity, food.serving_size)
    return CoachResponse(
        action="food_added",
        response=_added_message(meal_type, entry_date, food.name, data.quantity, data.unit, calories, food.protein),
    )


def parse_food_options(raw_text: str) -> list[FoodOption]:
    """Map a model's food option answer into FoodOption records.

    Accepts a bare JSON array or an object wrapping one under ``foodOptions``
    or ``options``. Entries without a usable name are dropped.
    """
    try:
        payload: Any = parse_llm_json(raw_text)
    except ValueError:
        return []
    if isinstance(payload, dict):
        payload = payload.get("foodOptions") or payload.get("options") or []
    if not isinstance(payload, list):
        return []
    options = [food_option_from_raw(item) for item in payload]
    return [option for option in options if option is not None]


def format_food_options(food_name: str, options: list[FoodOption]) -> str:
    lines = [f'I couldn\'t find "{food_name}" in the database. Here are a few options. Please select one by number:', ""]
    for index, option in enumerate(options, start=1):
        lines.append(
            f"{index}. {option.name} ({option.serving_size:g} {option.serving_unit}) - "
            f"{round(option.calories)} calories, {round(option.protein)}g protein, "
            f"{round(option.carbs)}g carbs, {round(option.fat)}g fat"
        )
    return "\n".join(lines)


def add_food_option(
    db: Session,
    user_id: int,
    option_index: int,
    pending: PendingFoodChoice,
    today: str,
) -> CoachResponse:
    """Store the chosen option as a custom food and log it. ``option_index`` is 0-based."""
    if option_index < 0 or option_index >= len(pending.foodOptions):
        return CoachResponse(action="none", response="Invalid option selected. Please try again.")

    option = pending.foodOptions[option_index]
    meal_type = normalize_meal_type(pending.mealType)
    entry_date = pending.entryDate or today
    try:
        food = Food(
            user_id=user_id,
            name=option.name,
            is_custom=True,
            calories=option.calories,
            protein=option.protein,
            carbs=option.carbs,
            fat=option.fat,
            serving_size=option.serving_size,
            serving_unit=option.serving_unit,
            **{field: getattr(option, field) for field in OPTIONAL_NUTRIENTS},
        )
        db.add(food)
        db.flush()
        db.add(
            FoodEntry(
                user_id=user_id,
                food_id=food.id,
                meal_type=meal_type,
                quantity=pending.quantity,
                unit=pending.unit,
                entry_date=date.fromisoformat(entry_date),
            )
        )
        db.commit()
    except (SQLAlchemyError, ValueError):
        db.rollback()
        logger.exception("food_option_insert_failed user_id=%s option=%s", user_id, option.name)
        return CoachResponse(action="none", response="Sorry, I encountered an error adding that food. Please try again.")

    calories = estimate_calories(option.calories, pending.quantity, option.serving_size)
    return CoachResponse(
        action="food_added",
        response=_added_message(meal_type, entry_date, option.name, pending.quantity, pending.unit, calories, option.protein),
    )
