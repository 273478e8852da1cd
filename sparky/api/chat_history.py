from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from sparky.api.auth import get_current_user
from sparky.db.models import ChatHistoryEntry, User
from sparky.db.session import get_db
from sparky.services.history import (
    apply_retention,
    clear_all_history,
    clear_history_older_than,
    decode_metadata,
    delete_history_entry,
    get_history_entry,
    list_history,
    save_chat_turn,
)

router = APIRouter(prefix="/api/chat", tags=["chat-history"])


class HistoryItem(BaseModel):
    id: int
    content: str
    message_type: str
    metadata: Optional[dict[str, Any]] = None
    created_at: str


class HistoryListResponse(BaseModel):
    items: list[HistoryItem]


class SaveHistoryRequest(BaseModel):
    content: str = Field(min_length=1, max_length=20000)
    messageType: Literal["user", "assistant"]
    metadata: Optional[dict[str, Any]] = None


class ClearedResponse(BaseModel):
    deleted: int


def _item(entry: ChatHistoryEntry) -> HistoryItem:
    return HistoryItem(
        id=entry.id,
        content=entry.content,
        message_type=entry.message_type,
        metadata=decode_metadata(entry),
        created_at=entry.created_at.isoformat(),
    )


@router.get("/sparky-chat-history", response_model=HistoryListResponse)
def get_chat_history(
    limit: Optional[int] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HistoryListResponse:
    apply_retention(db, user.id, user.auto_clear_history)
    rows = list_history(db, user.id, limit=limit)
    return HistoryListResponse(items=[_item(row) for row in rows])


@router.get("/sparky-chat-history/entry/{entry_id}", response_model=HistoryItem)
def get_chat_history_entry(
    entry_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HistoryItem:
    entry = get_history_entry(db, user.id, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Chat history entry not found")
    return _item(entry)


@router.delete("/sparky-chat-history/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_chat_history_entry(
    entry_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> None:
    if not delete_history_entry(db, user.id, entry_id):
        raise HTTPException(status_code=404, detail="Chat history entry not found")


@router.post("/save-history", response_model=HistoryItem, status_code=status.HTTP_201_CREATED)
def save_history(
    payload: SaveHistoryRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HistoryItem:
    entry = save_chat_turn(
        db,
        user_id=user.id,
        content=payload.content,
        message_type=payload.messageType,
        metadata=payload.metadata,
    )
    return _item(entry)


@router.post("/clear-old-history", response_model=ClearedResponse)
def clear_old_history(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ClearedResponse:
    return ClearedResponse(deleted=clear_history_older_than(db, user.id, days=7))


@router.post("/clear-all-history", response_model=ClearedResponse)
def clear_all(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ClearedResponse:
    return ClearedResponse(deleted=clear_all_history(db, user.id))
