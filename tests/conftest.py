from enum import Enum
from pathlib import Path
from typing import Any, Callable, Hashable, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from sparky.core.prompts import FOOD_OPTIONS_REQUEST_PREFIX
from sparky.core.security import encrypt_api_key, get_password_hash
from sparky.db.models import AIServiceSetting, Exercise, Food, User
from sparky.db.session import SessionLocal, configure_database, create_tables
from sparky.services.llm import ProviderError, get_llm_gateway


class FakeScenario(str, Enum):
    FOOD_APPLE = "FOOD_APPLE"
    FOOD_UNKNOWN = "FOOD_UNKNOWN"
    INVALID_FOOD = "INVALID_FOOD"
    EXERCISE_RUN = "EXERCISE_RUN"
    MEASUREMENT_BATCH = "MEASUREMENT_BATCH"
    WATER = "WATER"
    WATER_VAGUE_DATE = "WATER_VAGUE_DATE"
    QUESTION = "QUESTION"
    PLAIN_TEXT = "PLAIN_TEXT"
    UNKNOWN_INTENT = "UNKNOWN_INTENT"
    PROVIDER_DOWN = "PROVIDER_DOWN"


class FakeLLMGateway:
    """Scripted stand-in for ProviderGateway.

    Intent calls return the scenario fixture; food option requests return
    FOOD_OPTIONS. Every call is recorded for assertions.
    """

    def __init__(self, scenario: FakeScenario, fixture_dir: Path, food_options: str = "FOOD_OPTIONS") -> None:
        self.scenario = scenario
        self.fixture_dir = fixture_dir
        self.food_options = food_options
        self.calls: list[dict[str, Any]] = []

    def _load_text(self, name: str) -> str:
        return (self.fixture_dir / f"{name}.txt").read_text(encoding="utf-8")

    def complete(
        self,
        db: Session,
        user_id: int,
        messages: list[dict[str, Any]],
        service_config_id: int,
        cache_key: Optional[Hashable] = None,
    ) -> str:
        self.calls.append(
            {
                "user_id": user_id,
                "messages": messages,
                "service_config_id": service_config_id,
                "cache_key": cache_key,
            }
        )
        last = messages[-1]["content"]
        if isinstance(last, str) and last.startswith(FOOD_OPTIONS_REQUEST_PREFIX):
            return self._load_text(self.food_options)
        if self.scenario == FakeScenario.PROVIDER_DOWN:
            raise ProviderError(
                service_type="openai",
                model="gpt-4o-mini",
                message="AI service API call error: 503 - upstream unavailable",
                status_code=503,
                body="upstream unavailable",
            )
        return self._load_text(self.scenario.value)


@pytest.fixture(scope="session")
def fixture_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures" / "llm"


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "sparky_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from sparky.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(with_ai_service: bool = True, timezone: str = "UTC", auto_clear_history: str = "never") -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(
            email=email,
            password_hash=get_password_hash("StrongPass123"),
            timezone=timezone,
            auto_clear_history=auto_clear_history,
        )
        db_session.add(user)
        db_session.flush()
        if with_ai_service:
            sealed = encrypt_api_key("sk-test-12345678")
            db_session.add(
                AIServiceSetting(
                    user_id=user.id,
                    service_name="OpenAI",
                    service_type="openai",
                    encrypted_api_key=sealed.ciphertext,
                    api_key_iv=sealed.iv,
                    model_name="gpt-4o-mini",
                    is_active=True,
                )
            )
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def create_food(db_session: Session) -> Callable[..., Food]:
    def _create_food(name: str, user_id: Optional[int] = None, **nutrition: Any) -> Food:
        food = Food(name=name, user_id=user_id, is_custom=user_id is not None, **nutrition)
        db_session.add(food)
        db_session.commit()
        db_session.refresh(food)
        return food

    return _create_food


@pytest.fixture
def create_exercise(db_session: Session) -> Callable[..., Exercise]:
    def _create_exercise(name: str, user_id: Optional[int] = None, calories_per_hour: float = 300) -> Exercise:
        exercise = Exercise(name=name, user_id=user_id, calories_per_hour=calories_per_hour, category="general")
        db_session.add(exercise)
        db_session.commit()
        db_session.refresh(exercise)
        return exercise

    return _create_exercise


@pytest.fixture
def auth_token(client: TestClient) -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post("/auth/signup", json={"email": email, "password": password})
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def auth_headers(client: TestClient, auth_token: str) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {auth_token}"}
    created = client.post(
        "/api/chat/ai-service-settings",
        headers=headers,
        json={
            "service_name": "OpenAI",
            "service_type": "openai",
            "api_key": "sk-test-12345678",
            "is_active": True,
        },
    )
    assert created.status_code == 200
    return headers


@pytest.fixture
def fake_llm_factory(fixture_dir: Path) -> Callable[..., FakeLLMGateway]:
    def _factory(scenario: FakeScenario, food_options: str = "FOOD_OPTIONS") -> FakeLLMGateway:
        return FakeLLMGateway(scenario=scenario, fixture_dir=fixture_dir, food_options=food_options)

    return _factory


@pytest.fixture
def override_llm(app, fake_llm_factory):
    def _override(scenario: FakeScenario, food_options: str = "FOOD_OPTIONS") -> FakeLLMGateway:
        gateway = fake_llm_factory(scenario, food_options=food_options)
        app.dependency_overrides[get_llm_gateway] = lambda: gateway
        return gateway

    return _override
