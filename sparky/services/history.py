import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from sparky.db.models import ChatHistoryEntry

logger = logging.getLogger("uvicorn.error")

MESSAGE_TYPES = ("user", "assistant")
RETENTION_PREFERENCES = ("never", "7days", "all", "session")
MAX_CONTENT_CHARS = 20000


def _utcnow() -> datetime:
    # Stored naive, in UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def decode_metadata(entry: ChatHistoryEntry) -> Optional[dict[str, Any]]:
    if not entry.metadata_json:
        return None
    try:
        payload = json.loads(entry.metadata_json)
    except json.JSONDecodeError:
        logger.warning("chat_history_bad_metadata entry_id=%s", entry.id)
        return None
    return payload if isinstance(payload, dict) else None


def save_chat_turn(
    db: Session,
    *,
    user_id: int,
    content: str,
    message_type: str,
    metadata: Optional[dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
    commit: bool = True,
) -> ChatHistoryEntry:
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Unsupported message type: {message_type}")
    entry = ChatHistoryEntry(
        user_id=user_id,
        content=(content or "")[:MAX_CONTENT_CHARS],
        message_type=message_type,
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
        created_at=created_at or _utcnow(),
    )
    db.add(entry)
    if commit:
        db.commit()
        db.refresh(entry)
    else:
        db.flush()
    return entry


def recent_turns(db: Session, user_id: int, limit: int = 5) -> list[ChatHistoryEntry]:
    """Most recent ``limit`` turns, returned oldest first."""
    if limit <= 0:
        return []
    rows = (
        db.query(ChatHistoryEntry)
        .filter(ChatHistoryEntry.user_id == user_id)
        .order_by(ChatHistoryEntry.created_at.desc(), ChatHistoryEntry.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def list_history(db: Session, user_id: int, limit: Optional[int] = None) -> list[ChatHistoryEntry]:
    query = (
        db.query(ChatHistoryEntry)
        .filter(ChatHistoryEntry.user_id == user_id)
        .order_by(ChatHistoryEntry.created_at.asc(), ChatHistoryEntry.id.asc())
    )
    if limit:
        query = query.limit(limit)
    return query.all()


def get_history_entry(db: Session, user_id: int, entry_id: int) -> Optional[ChatHistoryEntry]:
    return (
        db.query(ChatHistoryEntry)
        .filter(ChatHistoryEntry.id == entry_id, ChatHistoryEntry.user_id == user_id)
        .first()
    )


def delete_history_entry(db: Session, user_id: int, entry_id: int) -> bool:
    entry = get_history_entry(db, user_id, entry_id)
    if not entry:
        return False
    db.delete(entry)
    db.commit()
    return True


def clear_all_history(db: Session, user_id: int, commit: bool = True) -> int:
    deleted = (
        db.query(ChatHistoryEntry)
        .filter(ChatHistoryEntry.user_id == user_id)
        .delete(synchronize_session=False)
    )
    if commit:
        db.commit()
    return int(deleted or 0)


def clear_history_older_than(
    db: Session,
    user_id: int,
    days: int = 7,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> int:
    cutoff = (now or _utcnow()) - timedelta(days=days)
    deleted = (
        db.query(ChatHistoryEntry)
        .filter(ChatHistoryEntry.user_id == user_id, ChatHistoryEntry.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    if commit:
        db.commit()
    return int(deleted or 0)


def apply_retention(
    db: Session,
    user_id: int,
    preference: Optional[str],
    now: Optional[datetime] = None,
    commit: bool = True,
) -> int:
    preference = (preference or "never").strip().lower()
    if preference == "7days":
        deleted = clear_history_older_than(db, user_id, days=7, now=now, commit=commit)
    elif preference in {"all", "session"}:
        deleted = clear_all_history(db, user_id, commit=commit)
    else:
        return 0
    if deleted:
        logger.info("chat_history_retention user_id=%s preference=%s deleted=%s", user_id, preference, deleted)
    return deleted
