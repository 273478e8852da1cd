from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from sparky.api.auth import get_current_user
from sparky.core.dates import is_valid_timezone
from sparky.db.models import User
from sparky.db.session import get_db

router = APIRouter(prefix="/api/user-preferences", tags=["preferences"])

RetentionPreference = Literal["never", "7days", "all", "session"]


class PreferencesResponse(BaseModel):
    auto_clear_history: RetentionPreference
    timezone: str


class PreferencesUpdate(BaseModel):
    auto_clear_history: Optional[RetentionPreference] = None
    timezone: Optional[str] = None


def _response(user: User) -> PreferencesResponse:
    return PreferencesResponse(auto_clear_history=user.auto_clear_history or "never", timezone=user.timezone or "UTC")


@router.get("", response_model=PreferencesResponse)
def get_preferences(user: User = Depends(get_current_user)) -> PreferencesResponse:
    return _response(user)


@router.put("", response_model=PreferencesResponse)
def update_preferences(
    payload: PreferencesUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> PreferencesResponse:
    if payload.timezone is not None:
        if not is_valid_timezone(payload.timezone):
            raise HTTPException(status_code=422, detail="Unknown timezone")
        user.timezone = payload.timezone
    if payload.auto_clear_history is not None:
        user.auto_clear_history = payload.auto_clear_history
    db.commit()
    db.refresh(user)
    return _response(user)
