import logging
from datetime import date

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sparky.core.contracts import CoachResponse
from sparky.db.models import WaterIntake
from sparky.services.intent import WaterData

logger = logging.getLogger("uvicorn.error")


def process_water_input(db: Session, user_id: int, data: WaterData, entry_date: str) -> CoachResponse:
    glasses = 1 if data.glasses_consumed is None else data.glasses_consumed
    day = date.fromisoformat(entry_date)
    try:
        row = (
            db.query(WaterIntake)
            .filter(WaterIntake.user_id == user_id, WaterIntake.entry_date == day)
            .first()
        )
        if not row:
            row = WaterIntake(user_id=user_id, entry_date=day, glasses_consumed=0)
            db.add(row)
        row.glasses_consumed = (row.glasses_consumed or 0) + glasses
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("water_upsert_failed user_id=%s entry_date=%s", user_id, entry_date)
        return CoachResponse(action="none", response="Sorry, I had trouble logging your water intake. Please try again.")

    noun = "glass" if glasses == 1 else "glasses"
    return CoachResponse(
        action="water_added",
        response=(
            f"**Added {glasses} {noun} of water to your intake on {entry_date}!**\n\n"
            f"That's {row.glasses_consumed} for the day. Keep up the great work!"
        ),
    )
