from datetime import date
from uuid import uuid4

from sparky.core.contracts import FoodOption, PendingFoodChoice, coerce_number
from sparky.db.models import (
    CheckInMeasurement,
    CustomCategory,
    CustomMeasurement,
    Exercise,
    ExerciseEntry,
    Food,
    FoodEntry,
    WaterIntake,
)
from sparky.services.handlers import measurement as measurement_handler
from sparky.services.handlers.chat import process_chat_input
from sparky.services.handlers.exercise import estimate_calories_per_hour, process_exercise_input
from sparky.services.handlers.food import (
    add_food_option,
    find_food,
    format_food_options,
    normalize_meal_type,
    parse_food_options,
    process_food_input,
)
from sparky.services.handlers.measurement import process_measurement_input
from sparky.services.handlers.water import process_water_input
from sparky.services.intent import (
    AskQuestionIntent,
    ChatIntent,
    ExerciseData,
    FoodData,
    MeasurementData,
    WaterData,
)


def test_food_hit_logs_entry_with_scaled_calories(db_session, create_user, create_food) -> None:
    user = create_user()
    apple = create_food("Apple", user_id=user.id, calories=95, protein=0.5, serving_size=1, serving_unit="piece")

    result = process_food_input(
        db_session, user.id, FoodData(food_name="apple", quantity=2, unit="piece", meal_type="snack"), "2024-03-15"
    )

    assert result.action == "food_added"
    assert "~190 calories" in result.response
    assert "snacks" in result.response
    entry = db_session.query(FoodEntry).filter(FoodEntry.user_id == user.id).one()
    assert entry.food_id == apple.id
    assert entry.meal_type == "snacks"
    assert entry.entry_date == date(2024, 3, 15)


def test_exact_user_food_beats_broad_public_match(db_session, create_user, create_food) -> None:
    user = create_user()
    token = uuid4().hex[:6]
    create_food(f"Greek Yogurt {token} Deluxe", user_id=None, calories=150)
    mine = create_food(f"Greek Yogurt {token}", user_id=user.id, calories=100)

    assert find_food(db_session, user.id, f"greek yogurt {token}").id == mine.id


def test_broad_match_includes_public_foods(db_session, create_user, create_food) -> None:
    user = create_user()
    token = uuid4().hex[:6]
    public = create_food(f"Banana Bread {token}", user_id=None, calories=300, serving_size=100)

    assert find_food(db_session, user.id, f"bread {token}").id == public.id


def test_other_users_foods_are_invisible(db_session, create_user, create_food) -> None:
    owner = create_user()
    other = create_user()
    token = uuid4().hex[:6]
    create_food(f"Secret Stew {token}", user_id=owner.id, calories=400)

    assert find_food(db_session, other.id, f"Secret Stew {token}") is None


def test_food_miss_returns_fallback_metadata(db_session, create_user) -> None:
    user = create_user()
    name = f"Mystery Dish {uuid4().hex[:6]}"

    result = process_food_input(
        db_session, user.id, FoodData(food_name=name, quantity=1.5, unit="cup", meal_type="dinner"), "2024-03-15"
    )

    assert result.action == "none"
    assert result.metadata == {
        "is_fallback": True,
        "foodName": name,
        "unit": "cup",
        "mealType": "dinner",
        "quantity": 1.5,
        "entryDate": "2024-03-15",
    }


def test_normalize_meal_type() -> None:
    assert normalize_meal_type("Snack") == "snacks"
    assert normalize_meal_type("lunch") == "lunch"
    assert normalize_meal_type(None) == "snacks"
    assert normalize_meal_type("brunch") == "snacks"


def test_parse_food_options_coalesces_fields(fixture_dir) -> None:
    options = parse_food_options((fixture_dir / "FOOD_OPTIONS.txt").read_text(encoding="utf-8"))

    assert [o.name for o in options] == ["Dragonfruit Bowl (small)", "Dragonfruit Smoothie Bowl"]
    smoothie = options[1]
    assert smoothie.calories == 320
    assert smoothie.protein == 8.5
    assert smoothie.serving_size == 1
    assert smoothie.serving_unit == "bowl"
    assert smoothie.sodium == 40


def test_parse_food_options_handles_non_json() -> None:
    assert parse_food_options("no options today") == []
    assert parse_food_options('{"foodOptions": [{"name": "Kiwi", "calories": 42}]}')[0].name == "Kiwi"


def test_add_food_option_creates_custom_food_and_entry(db_session, create_user) -> None:
    user = create_user()
    pending = PendingFoodChoice(
        foodOptions=[
            FoodOption(name="Kiwi (medium)", calories=42, protein=0.8, serving_size=1, serving_unit="piece"),
            FoodOption(name="Kiwi (100g)", calories=61, protein=1.1, serving_size=100, serving_unit="g"),
        ],
        mealType="breakfast",
        quantity=2,
        unit="piece",
        entryDate="2024-03-10",
    )

    result = add_food_option(db_session, user.id, 0, pending, today="2024-03-15")

    assert result.action == "food_added"
    assert "~84 calories" in result.response
    food = db_session.query(Food).filter(Food.user_id == user.id, Food.name == "Kiwi (medium)").one()
    assert food.is_custom is True
    entry = db_session.query(FoodEntry).filter(FoodEntry.food_id == food.id).one()
    assert entry.meal_type == "breakfast"
    assert entry.quantity == 2
    assert entry.entry_date == date(2024, 3, 10)


def test_add_food_option_rejects_out_of_range_choice(db_session, create_user) -> None:
    user = create_user()
    pending = PendingFoodChoice(foodOptions=[FoodOption(name="Kiwi")])

    result = add_food_option(db_session, user.id, 3, pending, today="2024-03-15")

    assert result.action == "none"
    assert "Invalid option" in result.response


def test_exercise_keyword_estimates_are_checked_in_order() -> None:
    assert estimate_calories_per_hour("Morning Walk") == 250
    assert estimate_calories_per_hour("jogging") == 600
    assert estimate_calories_per_hour("bike ride") == 500
    assert estimate_calories_per_hour("walking then running") == 250
    assert estimate_calories_per_hour("pilates") == 300


def test_unknown_exercise_is_created_as_custom_cardio(db_session, create_user) -> None:
    user = create_user()
    name = f"running {uuid4().hex[:6]}"

    result = process_exercise_input(
        db_session,
        user.id,
        ExerciseData(exercise_name=name, duration_minutes=30, distance=3, distance_unit="miles"),
        "2024-03-14",
    )

    assert result.action == "exercise_added"
    assert "~300 calories burned" in result.response
    exercise = db_session.query(Exercise).filter(Exercise.user_id == user.id).one()
    assert exercise.category == "cardio"
    assert exercise.calories_per_hour == 600
    entry = db_session.query(ExerciseEntry).filter(ExerciseEntry.user_id == user.id).one()
    assert entry.notes == "Distance: 3 miles"
    assert entry.entry_date == date(2024, 3, 14)
    assert entry.calories_burned == 300


def test_existing_exercise_is_reused_with_default_duration(db_session, create_user, create_exercise) -> None:
    user = create_user()
    name = f"Rowing {uuid4().hex[:6]}"
    rowing = create_exercise(name, user_id=user.id, calories_per_hour=480)

    result = process_exercise_input(db_session, user.id, ExerciseData(exercise_name=name.lower()), "2024-03-15")

    assert result.action == "exercise_added"
    entry = db_session.query(ExerciseEntry).filter(ExerciseEntry.exercise_id == rowing.id).one()
    assert entry.duration_minutes == 30
    assert entry.calories_burned == 240
    assert entry.notes is None


def test_measurement_batch_partial_success(db_session, create_user) -> None:
    user = create_user()
    data = MeasurementData.model_validate(
        {
            "measurements": [
                {"type": "weight", "value": 70.5, "unit": "kg"},
                {"type": "custom", "name": "Blood Sugar", "value": "140", "unit": "mg/dL"},
                {"type": "waist", "unit": "cm"},
                {"type": "custom", "value": 3},
                {"type": "laser", "value": 1},
            ]
        }
    )

    result = process_measurement_input(db_session, user.id, data, "2024-03-15")

    assert result.action == "measurement_added"
    outcomes = result.metadata["measurements"]
    assert [o["ok"] for o in outcomes] == [True, True, False, False, False]
    assert all(o["error"] for o in outcomes if not o["ok"])
    check_in = db_session.query(CheckInMeasurement).filter(CheckInMeasurement.user_id == user.id).one()
    assert check_in.weight == 70.5
    assert check_in.waist is None
    category = db_session.query(CustomCategory).filter(CustomCategory.user_id == user.id).one()
    assert category.name == "Blood Sugar"
    assert category.frequency == "Daily"
    assert db_session.query(CustomMeasurement).filter(CustomMeasurement.category_id == category.id).one().value == 140


def test_measurement_upserts_same_day_and_reuses_category(db_session, create_user) -> None:
    user = create_user()
    first = MeasurementData.model_validate(
        {"measurements": [{"type": "weight", "value": 71}, {"type": "custom", "name": "Mood", "value": 6}]}
    )
    second = MeasurementData.model_validate(
        {"measurements": [{"type": "steps", "value": 10000.4}, {"type": "custom", "name": "Mood", "value": 8}]}
    )

    process_measurement_input(db_session, user.id, first, "2024-03-15")
    process_measurement_input(db_session, user.id, second, "2024-03-15")

    row = db_session.query(CheckInMeasurement).filter(CheckInMeasurement.user_id == user.id).one()
    assert row.weight == 71
    assert row.steps == 10000
    assert db_session.query(CustomCategory).filter(CustomCategory.user_id == user.id).count() == 1
    assert db_session.query(CustomMeasurement).filter(CustomMeasurement.user_id == user.id).count() == 2


def test_measurement_with_only_invalid_items_is_none(db_session, create_user) -> None:
    user = create_user()
    data = MeasurementData.model_validate({"measurements": [{"type": "weight"}]})

    result = process_measurement_input(db_session, user.id, data, "2024-03-15")

    assert result.action == "none"
    assert result.metadata["measurements"][0]["ok"] is False


def test_water_accumulates_and_zero_is_a_no_op(db_session, create_user) -> None:
    user = create_user()

    process_water_input(db_session, user.id, WaterData(glasses_consumed=2), "2024-03-15")
    process_water_input(db_session, user.id, WaterData(), "2024-03-15")
    result = process_water_input(db_session, user.id, WaterData(glasses_consumed=0), "2024-03-15")

    assert result.action == "water_added"
    row = db_session.query(WaterIntake).filter(WaterIntake.user_id == user.id).one()
    db_session.refresh(row)
    assert row.glasses_consumed == 3


def test_chat_handler_maps_actions() -> None:
    assert process_chat_input(AskQuestionIntent(intent="ask_question", response="Eat protein.")).action == "advice"
    chat = process_chat_input(ChatIntent())
    assert chat.action == "chat"
    assert chat.response == "Okay, what would you like to talk about?"


def test_storage_failure_rolls_back_only_that_item(db_session, create_user, monkeypatch) -> None:
    user = create_user()

    def _conflicting_insert(db, user_id, entry_date, name, value) -> None:
        # Second check-in row for the same day violates uq_check_in_user_date.
        db.add(CheckInMeasurement(user_id=user_id, entry_date=entry_date, weight=1))
        db.flush()

    monkeypatch.setattr(measurement_handler, "_insert_custom", _conflicting_insert)
    data = MeasurementData.model_validate(
        {
            "measurements": [
                {"type": "weight", "value": 70, "unit": "kg"},
                {"type": "custom", "name": "Blood Sugar", "value": 140},
            ]
        }
    )

    result = process_measurement_input(db_session, user.id, data, "2024-03-15")

    assert result.action == "measurement_added"
    outcomes = result.metadata["measurements"]
    assert [o["ok"] for o in outcomes] == [True, False]
    assert outcomes[1]["error"] == "IntegrityError"
    db_session.expire_all()
    row = db_session.query(CheckInMeasurement).filter(CheckInMeasurement.user_id == user.id).one()
    assert row.weight == 70
    assert db_session.query(CustomMeasurement).filter(CustomMeasurement.user_id == user.id).count() == 0


def test_non_finite_numbers_are_rejected() -> None:
    assert coerce_number("NaN") is None
    assert coerce_number(float("inf")) is None
    assert coerce_number(" 12.5 ") == 12.5


def test_nan_option_values_still_format() -> None:
    options = parse_food_options('[{"name": "Kiwi", "calories": NaN, "protein": "Infinity", "serving_size": NaN}]')

    assert options[0].calories == 0
    assert options[0].protein == 0
    assert options[0].serving_size == 1
    assert "1. Kiwi (1 serving) - 0 calories" in format_food_options("kiwi", options)
