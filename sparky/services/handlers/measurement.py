import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sparky.core.contracts import CoachResponse, MeasurementOutcome, coerce_number
from sparky.db.models import CheckInMeasurement, CustomCategory, CustomMeasurement
from sparky.services.intent import MeasurementData, MeasurementItem

logger = logging.getLogger("uvicorn.error")

STANDARD_TYPES = ("weight", "neck", "waist", "hips", "steps")


class MeasurementItemError(ValueError):
    pass


def _validated(item: MeasurementItem) -> tuple[str, Optional[str], float, Optional[str]]:
    kind = str(item.type or "").strip().lower()
    if kind not in STANDARD_TYPES and kind != "custom":
        raise MeasurementItemError(f"Unknown measurement type: {item.type!r}")
    value = coerce_number(item.value)
    if value is None:
        raise MeasurementItemError("Missing or non-numeric value")
    name = item.name.strip() if isinstance(item.name, str) and item.name.strip() else None
    if kind == "custom" and not name:
        raise MeasurementItemError("Custom measurement needs a name")
    unit = str(item.unit).strip() if item.unit not in (None, "") else None
    return kind, name, value, unit


def _upsert_check_in(db: Session, user_id: int, entry_date: date, kind: str, value: float) -> None:
    row = (
        db.query(CheckInMeasurement)
        .filter(CheckInMeasurement.user_id == user_id, CheckInMeasurement.entry_date == entry_date)
        .first()
    )
    if not row:
        row = CheckInMeasurement(user_id=user_id, entry_date=entry_date)
        db.add(row)
    setattr(row, kind, int(round(value)) if kind == "steps" else value)
    db.flush()


def _insert_custom(db: Session, user_id: int, entry_date: date, name: str, value: float) -> None:
    category = (
        db.query(CustomCategory)
        .filter(CustomCategory.user_id == user_id, CustomCategory.name == name)
        .first()
    )
    if not category:
        category = CustomCategory(user_id=user_id, name=name, frequency="Daily", measurement_type="numeric")
        db.add(category)
        db.flush()
        logger.info("custom_category_created user_id=%s name=%s", user_id, name)
    db.add(
        CustomMeasurement(
            user_id=user_id,
            category_id=category.id,
            entry_date=entry_date,
            value=value,
            entry_timestamp=datetime.now(timezone.utc).replace(tzinfo=None),
        )
    )
    db.flush()


def _outcome_line(outcome: MeasurementOutcome) -> str:
    if outcome.type == "custom" and outcome.name:
        label = f'custom measurement "{outcome.name}"'
    else:
        label = outcome.type or "measurement"
    if outcome.ok:
        return f"{label.capitalize() if outcome.type != 'custom' else label}: {outcome.value:g}{outcome.unit or ''}"
    return f"Could not save {label}: {outcome.error}"


def process_measurement_input(db: Session, user_id: int, data: MeasurementData, entry_date: str) -> CoachResponse:
    """Store each measurement independently; one bad item never blocks the rest."""
    day = date.fromisoformat(entry_date)
    outcomes: list[MeasurementOutcome] = []

    for item in data.measurements:
        try:
            kind, name, value, unit = _validated(item)
        except MeasurementItemError as exc:
            logger.warning("measurement_item_invalid user_id=%s item=%s", user_id, item.model_dump())
            outcomes.append(
                MeasurementOutcome(
                    type=str(item.type or ""),
                    name=item.name if isinstance(item.name, str) else None,
                    value=coerce_number(item.value),
                    unit=item.unit if isinstance(item.unit, str) else None,
                    ok=False,
                    error=str(exc),
                )
            )
            continue

        try:
            with db.begin_nested():
                if kind == "custom":
                    _insert_custom(db, user_id, day, name or "", value)
                else:
                    _upsert_check_in(db, user_id, day, kind, value)
        except SQLAlchemyError as exc:
            logger.exception("measurement_item_failed user_id=%s type=%s name=%s", user_id, kind, name)
            outcomes.append(
                MeasurementOutcome(type=kind, name=name, value=value, unit=unit, ok=False, error=exc.__class__.__name__)
            )
            continue
        outcomes.append(MeasurementOutcome(type=kind, name=name, value=value, unit=unit, ok=True))

    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("measurement_commit_failed user_id=%s", user_id)
        return CoachResponse(
            action="none",
            response="Sorry, I had trouble processing those measurements. Could you try again?",
        )

    metadata = {"measurements": [outcome.model_dump() for outcome in outcomes]}
    if not outcomes:
        return CoachResponse(
            action="none",
            response="I couldn't identify any valid measurements in your message.",
            metadata=metadata,
        )

    lines = [_outcome_line(outcome) for outcome in outcomes]
    if any(outcome.ok for outcome in outcomes):
        header = f"**Measurements logged for {entry_date}!**"
        footer = "Great job tracking your progress! Consistency is key to reaching your goals."
        return CoachResponse(
            action="measurement_added",
            response="\n".join([header, "", *lines, "", footer]),
            metadata=metadata,
        )
    return CoachResponse(action="none", response="\n".join(lines), metadata=metadata)
