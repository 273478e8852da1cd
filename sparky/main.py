from fastapi import FastAPI

from sparky.api.ai_settings import router as ai_settings_router
from sparky.api.auth import router as auth_router
from sparky.api.chat import router as chat_router
from sparky.api.chat_history import router as chat_history_router
from sparky.api.preferences import router as preferences_router
from sparky.db.session import create_tables

app = FastAPI(title="Sparky Coach")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Sparky Coach API", "status": "ok"}


app.include_router(auth_router)
app.include_router(ai_settings_router)
app.include_router(chat_history_router)
app.include_router(chat_router)
app.include_router(preferences_router)
