from datetime import datetime
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from sparky.api.auth import get_current_user
from sparky.db.models import AIServiceSetting, User
from sparky.db.session import get_db
from sparky.services.ai_settings import (
    delete_setting,
    get_active_setting,
    get_setting,
    list_settings,
    save_setting,
)
from sparky.services.llm import default_model

router = APIRouter(prefix="/api/chat/ai-service-settings", tags=["ai-settings"])


class ServiceType(str, Enum):
    openai = "openai"
    openai_compatible = "openai_compatible"
    anthropic = "anthropic"
    google = "google"
    mistral = "mistral"
    groq = "groq"
    ollama = "ollama"
    custom = "custom"


URL_REQUIRED = {ServiceType.openai_compatible, ServiceType.ollama, ServiceType.custom}


class AIServiceSettingInput(BaseModel):
    id: Optional[int] = None
    service_name: str = Field(min_length=1, max_length=128)
    service_type: ServiceType
    api_key: Optional[str] = Field(default=None, min_length=1, max_length=512)
    custom_url: Optional[str] = Field(default=None, max_length=512)
    model_name: Optional[str] = Field(default=None, max_length=128)
    system_prompt: Optional[str] = Field(default=None, max_length=4000)
    is_active: bool = False

    @model_validator(mode="after")
    def validate_url(self):
        if self.service_type in URL_REQUIRED and not (self.custom_url or "").strip():
            raise ValueError(f"custom_url is required for {self.service_type.value}")
        return self


class AIServiceSettingResponse(BaseModel):
    id: int
    service_name: str
    service_type: str
    custom_url: Optional[str] = None
    model_name: Optional[str] = None
    effective_model: str
    system_prompt: Optional[str] = None
    is_active: bool
    has_api_key: bool
    updated_at: Optional[datetime] = None


def _response(setting: AIServiceSetting) -> AIServiceSettingResponse:
    # Keys never leave the server, not even masked.
    return AIServiceSettingResponse(
        id=setting.id,
        service_name=setting.service_name,
        service_type=setting.service_type,
        custom_url=setting.custom_url,
        model_name=setting.model_name,
        effective_model=setting.model_name or default_model(setting.service_type),
        system_prompt=setting.system_prompt,
        is_active=setting.is_active,
        has_api_key=bool(setting.encrypted_api_key and setting.api_key_iv),
        updated_at=setting.updated_at,
    )


@router.get("", response_model=list[AIServiceSettingResponse])
def get_settings(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> list[AIServiceSettingResponse]:
    return [_response(row) for row in list_settings(db, user.id)]


@router.get("/active", response_model=AIServiceSettingResponse)
def get_active(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> AIServiceSettingResponse:
    setting = get_active_setting(db, user.id)
    if not setting:
        raise HTTPException(status_code=404, detail="No active AI service configured")
    return _response(setting)


@router.post("", response_model=AIServiceSettingResponse)
def upsert_setting(
    payload: AIServiceSettingInput,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AIServiceSettingResponse:
    existing = None
    if payload.id is not None:
        existing = get_setting(db, user.id, payload.id)
        if not existing:
            raise HTTPException(status_code=404, detail="AI service setting not found")
    elif not payload.api_key:
        raise HTTPException(status_code=400, detail="API key is required for a new AI service")

    setting = save_setting(
        db,
        user.id,
        service_name=payload.service_name,
        service_type=payload.service_type.value,
        api_key=payload.api_key,
        custom_url=payload.custom_url,
        model_name=payload.model_name,
        system_prompt=payload.system_prompt,
        is_active=payload.is_active,
        setting=existing,
    )
    return _response(setting)


@router.delete("/{setting_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_setting(
    setting_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> None:
    if not delete_setting(db, user.id, setting_id):
        raise HTTPException(status_code=404, detail="AI service setting not found")
