import base64
import json
import logging
import os
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from sparky.api.auth import get_current_user
from sparky.core.contracts import CoachResponse
from sparky.core.security import DecryptionError
from sparky.db.models import User
from sparky.db.session import get_db
from sparky.services.coach import ChatOrchestrator
from sparky.services.history import decode_metadata, recent_turns, save_chat_turn
from sparky.services.intent import ImageInput
from sparky.services.llm import (
    InvalidMessagesError,
    LLMGateway,
    ProviderError,
    ServiceConfigError,
    ServiceNotFoundError,
    UnsupportedCapabilityError,
    get_llm_gateway,
    validate_messages,
)

router = APIRouter(prefix="/api/chat", tags=["chat"])
logger = logging.getLogger("uvicorn.error")
SPARKY_IMAGE_MAX_BYTES = int(os.getenv("SPARKY_IMAGE_MAX_BYTES", str(8 * 1024 * 1024)))


class ServiceConfigRef(BaseModel):
    id: int


class ChatCompletionRequest(BaseModel):
    messages: Any = None
    service_config: Optional[ServiceConfigRef] = None


class ChatCompletionResponse(BaseModel):
    content: str


@router.post("", response_model=ChatCompletionResponse)
def chat_completion(
    payload: ChatCompletionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: LLMGateway = Depends(get_llm_gateway),
) -> ChatCompletionResponse:
    if payload.service_config is None:
        raise HTTPException(status_code=400, detail="AI service configuration is missing.")
    try:
        messages = validate_messages(payload.messages)
        content = gateway.complete(db, user.id, messages, payload.service_config.id)
    except (InvalidMessagesError, UnsupportedCapabilityError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ServiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ServiceConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except DecryptionError:
        logger.exception("chat_decryption_failed user_id=%s service_config_id=%s", user.id, payload.service_config.id)
        raise HTTPException(status_code=500, detail="Failed to decrypt API key.")
    except ProviderError as exc:
        logger.exception(
            "chat_provider_error user_id=%s service_type=%s status=%s", user.id, exc.service_type, exc.status_code
        )
        raise HTTPException(status_code=exc.status_code or status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return ChatCompletionResponse(content=content)


def _read_image(image: Optional[UploadFile]) -> Optional[ImageInput]:
    if image is None:
        return None
    if not image.content_type or not image.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image uploads are supported.")
    image_bytes = image.file.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Uploaded image is empty.")
    if len(image_bytes) > SPARKY_IMAGE_MAX_BYTES:
        raise HTTPException(
            status_code=400,
            detail=f"Image too large. Max size is {SPARKY_IMAGE_MAX_BYTES // (1024 * 1024)}MB.",
        )
    return ImageInput(mime_type=image.content_type, data_base64=base64.b64encode(image_bytes).decode("ascii"))


def _last_bot_metadata(db: Session, user_id: int, raw: Optional[str], transaction_id: str) -> Optional[dict[str, Any]]:
    if raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("chat_bad_last_bot_metadata transaction_id=%s", transaction_id)
            return None
        return parsed if isinstance(parsed, dict) else None
    # Without client state, fall back to the latest stored assistant turn.
    latest = recent_turns(db, user_id, limit=1)
    if latest and latest[0].message_type == "assistant":
        return decode_metadata(latest[0])
    return None


@router.post("/process-input", response_model=CoachResponse, response_model_exclude_none=True)
def process_input(
    input: str = Form(""),
    transactionId: Optional[str] = Form(default=None),
    userId: Optional[str] = Form(default=None),
    lastBotMessageMetadata: Optional[str] = Form(default=None),
    image: Optional[UploadFile] = File(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: LLMGateway = Depends(get_llm_gateway),
) -> CoachResponse:
    if userId is not None and userId.strip() and userId.strip() != str(user.id):
        raise HTTPException(status_code=403, detail="userId does not match the authenticated user")
    transaction_id = (transactionId or "").strip() or uuid.uuid4().hex
    image_input = _read_image(image)
    last_bot_metadata = _last_bot_metadata(db, user.id, lastBotMessageMetadata, transaction_id)

    orchestrator = ChatOrchestrator(db=db, gateway=gateway, user=user, transaction_id=transaction_id)
    result = orchestrator.process(input, image=image_input, last_bot_metadata=last_bot_metadata)

    user_text = (input or "").strip() or "[image]"
    if image_input is not None and (input or "").strip():
        user_text = f"[image] {user_text}"
    save_chat_turn(db, user_id=user.id, content=user_text, message_type="user", commit=False)
    save_chat_turn(db, user_id=user.id, content=result.response, message_type="assistant", metadata=result.metadata)
    return result
