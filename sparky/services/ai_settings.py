import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from sparky.core.security import encrypt_api_key
from sparky.db.models import AIServiceSetting

logger = logging.getLogger("uvicorn.error")


def list_settings(db: Session, user_id: int) -> list[AIServiceSetting]:
    return (
        db.query(AIServiceSetting)
        .filter(AIServiceSetting.user_id == user_id)
        .order_by(AIServiceSetting.created_at.asc(), AIServiceSetting.id.asc())
        .all()
    )


def get_setting(db: Session, user_id: int, setting_id: int) -> Optional[AIServiceSetting]:
    return (
        db.query(AIServiceSetting)
        .filter(AIServiceSetting.id == setting_id, AIServiceSetting.user_id == user_id)
        .first()
    )


def get_active_setting(db: Session, user_id: int) -> Optional[AIServiceSetting]:
    # More than one active row is tolerated; the most recently updated wins.
    return (
        db.query(AIServiceSetting)
        .filter(AIServiceSetting.user_id == user_id, AIServiceSetting.is_active.is_(True))
        .order_by(AIServiceSetting.updated_at.desc(), AIServiceSetting.id.desc())
        .first()
    )


def save_setting(
    db: Session,
    user_id: int,
    *,
    service_name: str,
    service_type: str,
    api_key: Optional[str] = None,
    custom_url: Optional[str] = None,
    model_name: Optional[str] = None,
    system_prompt: Optional[str] = None,
    is_active: bool = False,
    setting: Optional[AIServiceSetting] = None,
) -> AIServiceSetting:
    """Create or update a setting. A new key is always sealed under a fresh IV."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    if setting is None:
        if not api_key:
            raise ValueError("API key is required for a new AI service")
        setting = AIServiceSetting(user_id=user_id, created_at=now)
        db.add(setting)

    setting.service_name = service_name.strip()
    setting.service_type = service_type
    setting.custom_url = (custom_url or "").strip() or None
    setting.model_name = (model_name or "").strip() or None
    setting.system_prompt = (system_prompt or "").strip() or None
    setting.is_active = is_active
    setting.updated_at = now
    if api_key:
        sealed = encrypt_api_key(api_key)
        setting.encrypted_api_key = sealed.ciphertext
        setting.api_key_iv = sealed.iv
    db.flush()

    if is_active:
        (
            db.query(AIServiceSetting)
            .filter(AIServiceSetting.user_id == user_id, AIServiceSetting.id != setting.id)
            .update({AIServiceSetting.is_active: False}, synchronize_session=False)
        )
    db.commit()
    db.refresh(setting)
    logger.info(
        "ai_setting_saved user_id=%s setting_id=%s service_type=%s active=%s",
        user_id,
        setting.id,
        setting.service_type,
        setting.is_active,
    )
    return setting


def delete_setting(db: Session, user_id: int, setting_id: int) -> bool:
    setting = get_setting(db, user_id, setting_id)
    if not setting:
        return False
    db.delete(setting)
    db.commit()
    return True
