import logging
from datetime import date
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sparky.core.contracts import CoachResponse
from sparky.db.models import Exercise, ExerciseEntry
from sparky.services.intent import ExerciseData

logger = logging.getLogger("uvicorn.error")

DEFAULT_DURATION_MINUTES = 30
DEFAULT_CALORIES_PER_HOUR = 300

# First keyword hit wins.
CALORIE_ESTIMATES: tuple[tuple[tuple[str, ...], int], ...] = (
    (("walk",), 250),
    (("run", "jog"), 600),
    (("cycle", "bike"), 500),
    (("swim",), 400),
    (("yoga",), 200),
    (("hike",), 350),
)


def estimate_calories_per_hour(exercise_name: str) -> int:
    lowered = exercise_name.lower()
    for keywords, calories in CALORIE_ESTIMATES:
        if any(keyword in lowered for keyword in keywords):
            return calories
    return DEFAULT_CALORIES_PER_HOUR


def find_exercise(db: Session, user_id: int, exercise_name: str) -> Optional[Exercise]:
    return (
        db.query(Exercise)
        .filter(
            or_(Exercise.user_id == user_id, Exercise.user_id.is_(None)),
            Exercise.name.ilike(f"%{exercise_name.strip()}%"),
        )
        .order_by(Exercise.user_id.is_(None), Exercise.id.asc())
        .first()
    )


def distance_note(distance: Optional[float], distance_unit: Optional[str]) -> Optional[str]:
    if not distance:
        return None
    return f"Distance: {distance:g} {distance_unit or 'miles'}"


def process_exercise_input(db: Session, user_id: int, data: ExerciseData, entry_date: str) -> CoachResponse:
    try:
        exercise = find_exercise(db, user_id, data.exercise_name)
        if not exercise:
            exercise = Exercise(
                user_id=user_id,
                name=data.exercise_name,
                category="cardio",
                calories_per_hour=estimate_calories_per_hour(data.exercise_name),
                is_custom=True,
            )
            db.add(exercise)
            db.flush()
            logger.info("exercise_created user_id=%s exercise=%s", user_id, exercise.name)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("exercise_lookup_failed user_id=%s exercise=%s", user_id, data.exercise_name)
        return CoachResponse(action="none", response="Sorry, I couldn't create that exercise. Please try again.")

    duration = data.duration_minutes or DEFAULT_DURATION_MINUTES
    calories_burned = round((exercise.calories_per_hour or DEFAULT_CALORIES_PER_HOUR) / 60 * duration)
    note = distance_note(data.distance, data.distance_unit)
    try:
        db.add(
            ExerciseEntry(
                user_id=user_id,
                exercise_id=exercise.id,
                entry_date=date.fromisoformat(entry_date),
                duration_minutes=duration,
                calories_burned=calories_burned,
                notes=note,
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("exercise_entry_insert_failed user_id=%s exercise_id=%s", user_id, exercise.id)
        return CoachResponse(action="none", response="Sorry, I couldn't add that exercise. Please try again.")

    lines = [
        f"**Great workout! Logged for {entry_date}!**",
        "",
        f"{data.exercise_name} - {duration:g} minutes",
    ]
    if note:
        lines.append(note)
    lines.extend(
        [
            f"~{calories_burned} calories burned",
            "",
            "Awesome job staying active! This really helps with your fitness goals.",
        ]
    )
    return CoachResponse(action="exercise_added", response="\n".join(lines))
