import os
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from sparky.db.models import Base

# Override with DB_PATH when needed.
DB_PATH = os.getenv("DB_PATH", "./data/sparky.db")

connect_args = {"check_same_thread": False}


def _build_engine(db_path: str):
    # Ensure parent directory exists when a nested path is configured.
    db_parent = Path(db_path).expanduser().resolve().parent
    db_parent.mkdir(parents=True, exist_ok=True)
    database_url = f"sqlite:///{db_path}"
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> None:
    global DB_PATH, engine
    DB_PATH = db_path
    engine = _build_engine(DB_PATH)
    SessionLocal.configure(bind=engine)


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
    # Lightweight forward-compatible column upgrades for SQLite without full migrations.
    with engine.begin() as conn:
        user_columns = {row[1] for row in conn.execute(text("PRAGMA table_info(users)")).fetchall()}
        if "timezone" not in user_columns:
            conn.execute(text("ALTER TABLE users ADD COLUMN timezone VARCHAR(64) NOT NULL DEFAULT 'UTC'"))
        if "auto_clear_history" not in user_columns:
            conn.execute(
                text("ALTER TABLE users ADD COLUMN auto_clear_history VARCHAR(16) NOT NULL DEFAULT 'never'")
            )


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
