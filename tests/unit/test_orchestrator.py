from datetime import date

import httpx

from sparky.db.models import AIServiceSetting, ExerciseEntry, FoodEntry, WaterIntake
from sparky.services.ai_settings import get_active_setting
from sparky.services.coach import (
    EMPTY_INPUT_MESSAGE,
    INVALID_DETAILS_MESSAGE,
    NO_SERVICE_MESSAGE,
    PROVIDER_FAILURE_MESSAGE,
    ChatOrchestrator,
    CoachState,
)
from sparky.services.llm import ProviderGateway
from conftest import FakeScenario

TODAY = date(2024, 3, 15)


def _orchestrator(db_session, user, gateway) -> ChatOrchestrator:
    return ChatOrchestrator(db=db_session, gateway=gateway, user=user, transaction_id="tx-test", today=TODAY)


def test_food_hit_is_logged_for_today(db_session, create_user, create_food, fake_llm_factory) -> None:
    user = create_user()
    create_food("Apple", user_id=user.id, calories=95, protein=0.5, serving_size=1, serving_unit="piece")
    gateway = fake_llm_factory(FakeScenario.FOOD_APPLE)
    orchestrator = _orchestrator(db_session, user, gateway)

    result = orchestrator.process("I ate two apples")

    assert result.action == "food_added"
    assert "~190 calories" in result.response
    assert orchestrator.state == CoachState.done
    entry = db_session.query(FoodEntry).filter(FoodEntry.user_id == user.id).one()
    assert entry.entry_date == TODAY
    assert len(gateway.calls) == 1


def test_food_miss_offers_generated_options_then_numeric_choice_logs_it(
    db_session, create_user, fake_llm_factory
) -> None:
    user = create_user()
    setting = get_active_setting(db_session, user.id)
    gateway = fake_llm_factory(FakeScenario.FOOD_UNKNOWN)
    first = _orchestrator(db_session, user, gateway)

    offered = first.process("dragonfruit bowl for breakfast on 2024-03-10")

    assert offered.action == "food_options"
    assert first.state == CoachState.awaiting_food_choice
    assert "1. Dragonfruit Bowl (small)" in offered.response
    assert "2. Dragonfruit Smoothie Bowl" in offered.response
    assert offered.metadata["mealType"] == "breakfast"
    assert offered.metadata["entryDate"] == "2024-03-10"
    assert len(offered.metadata["foodOptions"]) == 2
    assert gateway.calls[1]["cache_key"] == f"food_options:{setting.id}:dragonfruit bowl:bowl"
    assert gateway.calls[1]["messages"][1]["content"] == "GENERATE_FOOD_OPTIONS:Dragonfruit Bowl in bowl"

    second = _orchestrator(db_session, user, gateway)
    chosen = second.process("2", last_bot_metadata=offered.metadata)

    assert chosen.action == "food_added"
    assert "Dragonfruit Smoothie Bowl" in chosen.response
    assert len(gateway.calls) == 2
    entry = db_session.query(FoodEntry).filter(FoodEntry.user_id == user.id).one()
    assert entry.meal_type == "breakfast"
    assert entry.entry_date == date(2024, 3, 10)
    assert entry.food.is_custom is True


def test_non_numeric_reply_to_options_is_a_new_message(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    gateway = fake_llm_factory(FakeScenario.QUESTION)
    pending = {"foodOptions": [{"name": "Kiwi", "calories": 42}], "mealType": "snacks", "quantity": 1, "unit": "piece"}

    result = _orchestrator(db_session, user, gateway).process("how much protein do I need?", last_bot_metadata=pending)

    assert result.action == "advice"
    assert "protein" in result.response
    assert len(gateway.calls) == 1


def test_empty_generated_options_apologizes(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    gateway = fake_llm_factory(FakeScenario.FOOD_UNKNOWN, food_options="FOOD_OPTIONS_EMPTY")

    result = _orchestrator(db_session, user, gateway).process("dragonfruit bowl")

    assert result.action == "none"
    assert "AI settings" in result.response


def test_exercise_uses_relative_entry_date(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    gateway = fake_llm_factory(FakeScenario.EXERCISE_RUN)

    result = _orchestrator(db_session, user, gateway).process("I ran 3 miles in 30 minutes yesterday")

    assert result.action == "exercise_added"
    entry = db_session.query(ExerciseEntry).filter(ExerciseEntry.user_id == user.id).one()
    assert entry.entry_date == date(2024, 3, 14)
    assert entry.notes == "Distance: 3 miles"


def test_entry_date_falls_back_to_raw_input(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    gateway = fake_llm_factory(FakeScenario.WATER)

    result = _orchestrator(db_session, user, gateway).process("two glasses of water yesterday")

    assert result.action == "water_added"
    row = db_session.query(WaterIntake).filter(WaterIntake.user_id == user.id).one()
    assert row.entry_date == date(2024, 3, 14)
    assert row.glasses_consumed == 2


def test_measurement_batch_reports_each_item(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    gateway = fake_llm_factory(FakeScenario.MEASUREMENT_BATCH)

    result = _orchestrator(db_session, user, gateway).process("weight 70.5kg, blood sugar 140, waist")

    assert result.action == "measurement_added"
    assert [m["ok"] for m in result.metadata["measurements"]] == [True, True, False]


def test_plain_text_reply_becomes_chat(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    result = _orchestrator(db_session, user, fake_llm_factory(FakeScenario.PLAIN_TEXT)).process("hey sparky")

    assert result.action == "chat"
    assert result.response.startswith("Staying hydrated")


def test_unknown_intent_uses_model_response(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    result = _orchestrator(db_session, user, fake_llm_factory(FakeScenario.UNKNOWN_INTENT)).process("slept 8 hours")

    assert result.action == "none"
    assert result.response.startswith("I can't log sleep yet")


def test_invalid_intent_data_gets_specific_message(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    result = _orchestrator(db_session, user, fake_llm_factory(FakeScenario.INVALID_FOOD)).process("ate 2 of them")

    assert result.action == "none"
    assert result.response == INVALID_DETAILS_MESSAGE


def test_provider_failure_is_a_friendly_message(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    result = _orchestrator(db_session, user, fake_llm_factory(FakeScenario.PROVIDER_DOWN)).process("log an apple")

    assert result.action == "none"
    assert result.response == PROVIDER_FAILURE_MESSAGE


def test_missing_active_service_skips_provider(db_session, create_user, fake_llm_factory) -> None:
    user = create_user(with_ai_service=False)
    gateway = fake_llm_factory(FakeScenario.FOOD_APPLE)

    result = _orchestrator(db_session, user, gateway).process("log an apple")

    assert result.response == NO_SERVICE_MESSAGE
    assert gateway.calls == []


def test_empty_input_skips_provider(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    gateway = fake_llm_factory(FakeScenario.FOOD_APPLE)

    result = _orchestrator(db_session, user, gateway).process("   ")

    assert result.action == "none"
    assert result.response == EMPTY_INPUT_MESSAGE
    assert gateway.calls == []


def test_undecryptable_key_points_at_settings(db_session, create_user) -> None:
    user = create_user()
    setting = db_session.query(AIServiceSetting).filter(AIServiceSetting.user_id == user.id).one()
    setting.api_key_iv = "AAAAAAAAAAAAAAAA"
    db_session.commit()

    def _unreachable(request: httpx.Request) -> httpx.Response:
        raise AssertionError("provider must not be called")

    gateway = ProviderGateway(http_client=httpx.Client(transport=httpx.MockTransport(_unreachable)))
    result = _orchestrator(db_session, user, gateway).process("log an apple")

    assert result.action == "none"
    assert result.response == NO_SERVICE_MESSAGE


def test_unparsed_model_date_does_not_fall_back_to_raw_input(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    gateway = fake_llm_factory(FakeScenario.WATER_VAGUE_DATE)

    result = _orchestrator(db_session, user, gateway).process("last Monday I drank 1/2 a bottle")

    assert result.action == "water_added"
    row = db_session.query(WaterIntake).filter(WaterIntake.user_id == user.id).one()
    assert row.entry_date == TODAY


def test_non_ascii_digit_reply_is_a_new_message(db_session, create_user, fake_llm_factory) -> None:
    user = create_user()
    gateway = fake_llm_factory(FakeScenario.QUESTION)
    pending = {"foodOptions": [{"name": "Kiwi", "calories": 42}], "mealType": "snacks", "quantity": 1, "unit": "piece"}

    result = _orchestrator(db_session, user, gateway).process("²", last_bot_metadata=pending)

    assert result.action == "advice"
    assert len(gateway.calls) == 1
