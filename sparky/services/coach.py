import logging
import re
import uuid
from datetime import date
from enum import Enum
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from sparky.core.contracts import CoachResponse, PendingFoodChoice
from sparky.core.dates import local_today, resolve_entry_date
from sparky.core.prompts import food_options_request, render_food_options_system_prompt
from sparky.core.security import DecryptionError
from sparky.db.models import AIServiceSetting, User
from sparky.services.ai_settings import get_active_setting
from sparky.services.handlers.chat import process_chat_input
from sparky.services.handlers.exercise import process_exercise_input
from sparky.services.handlers.food import (
    add_food_option,
    format_food_options,
    parse_food_options,
    process_food_input,
)
from sparky.services.handlers.measurement import process_measurement_input
from sparky.services.handlers.water import process_water_input
from sparky.services.intent import (
    AskQuestionIntent,
    ChatIntent,
    ImageInput,
    IntentResult,
    IntentValidationError,
    LogExerciseIntent,
    LogFoodIntent,
    LogMeasurementIntent,
    LogWaterIntent,
    UnknownIntent,
    extract_intent,
)
from sparky.services.llm import (
    InvalidMessagesError,
    LLMGateway,
    ProviderError,
    ServiceConfigError,
    UnsupportedCapabilityError,
)

logger = logging.getLogger("uvicorn.error")

EMPTY_INPUT_MESSAGE = "Please provide text or an image."
NO_SERVICE_MESSAGE = "Sorry, I can't connect to the AI service. Please check your AI settings."
PROVIDER_FAILURE_MESSAGE = "Sorry, I had trouble getting a response from the AI. Please try again later."
INVALID_DETAILS_MESSAGE = (
    "Sorry, I couldn't read the details of that entry. Could you rephrase it with the name and amount?"
)
UNKNOWN_INTENT_MESSAGE = "I'm not sure how to handle that request. Can you please rephrase?"
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred while processing your request."


class CoachState(str, Enum):
    idle = "idle"
    awaiting_intent = "awaiting_intent"
    dispatching = "dispatching"
    awaiting_food_choice = "awaiting_food_choice"
    done = "done"


def _food_choice_index(text: str, pending: Optional[PendingFoodChoice]) -> Optional[int]:
    if pending is None or not re.fullmatch(r"\d+", text, re.ASCII):
        return None
    return int(text) - 1


class ChatOrchestrator:
    """Drives one chat turn from raw input to a CoachResponse.

    Never raises: every failure resolves to ``action="none"`` with a message
    the user can act on. One instance per request.
    """

    def __init__(
        self,
        db: Session,
        gateway: LLMGateway,
        user: User,
        transaction_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.user = user
        self.transaction_id = transaction_id or uuid.uuid4().hex
        self.today = today or local_today(user.timezone)
        self.state = CoachState.idle

    def _transition(self, state: CoachState) -> None:
        logger.debug(
            "coach_state transaction_id=%s from=%s to=%s", self.transaction_id, self.state.value, state.value
        )
        self.state = state

    def process(
        self,
        text: Optional[str],
        image: Optional[ImageInput] = None,
        last_bot_metadata: Optional[dict[str, Any]] = None,
    ) -> CoachResponse:
        try:
            response = self._process((text or "").strip(), image, last_bot_metadata)
        except ProviderError as exc:
            logger.exception(
                "coach_provider_error transaction_id=%s user_id=%s status=%s",
                self.transaction_id,
                self.user.id,
                exc.status_code,
            )
            response = CoachResponse(action="none", response=PROVIDER_FAILURE_MESSAGE)
        except (ServiceConfigError, DecryptionError):
            logger.exception("coach_service_config_error transaction_id=%s user_id=%s", self.transaction_id, self.user.id)
            response = CoachResponse(action="none", response=NO_SERVICE_MESSAGE)
        except UnsupportedCapabilityError as exc:
            logger.warning("coach_unsupported_capability transaction_id=%s detail=%s", self.transaction_id, exc)
            response = CoachResponse(action="none", response=str(exc))
        except IntentValidationError as exc:
            logger.warning(
                "coach_intent_invalid transaction_id=%s intent=%s detail=%s", self.transaction_id, exc.intent, exc.detail
            )
            response = CoachResponse(action="none", response=INVALID_DETAILS_MESSAGE)
        except InvalidMessagesError:
            logger.exception("coach_invalid_messages transaction_id=%s", self.transaction_id)
            response = CoachResponse(action="none", response=UNEXPECTED_ERROR_MESSAGE)
        except Exception:
            self.db.rollback()
            logger.exception("coach_unexpected_error transaction_id=%s user_id=%s", self.transaction_id, self.user.id)
            response = CoachResponse(action="none", response=UNEXPECTED_ERROR_MESSAGE)

        if self.state != CoachState.awaiting_food_choice:
            self._transition(CoachState.done)
        logger.info(
            "coach_turn transaction_id=%s user_id=%s action=%s state=%s",
            self.transaction_id,
            self.user.id,
            response.action,
            self.state.value,
        )
        return response

    def _process(
        self,
        text: str,
        image: Optional[ImageInput],
        last_bot_metadata: Optional[dict[str, Any]],
    ) -> CoachResponse:
        pending = PendingFoodChoice.from_metadata(last_bot_metadata)
        choice = _food_choice_index(text, pending)
        if pending is not None and choice is not None:
            self._transition(CoachState.dispatching)
            return add_food_option(self.db, self.user.id, choice, pending, today=self.today.isoformat())

        if not text and image is None:
            return CoachResponse(action="none", response=EMPTY_INPUT_MESSAGE)

        setting = get_active_setting(self.db, self.user.id)
        if not setting:
            logger.info("coach_no_active_service transaction_id=%s user_id=%s", self.transaction_id, self.user.id)
            return CoachResponse(action="none", response=NO_SERVICE_MESSAGE)

        self._transition(CoachState.awaiting_intent)
        intent = extract_intent(
            self.gateway,
            self.db,
            user_id=self.user.id,
            service_config_id=setting.id,
            text=text,
            today=self.today,
            image=image,
            extra_instruction=setting.system_prompt,
            transaction_id=self.transaction_id,
        )

        self._transition(CoachState.dispatching)
        # The raw input is only scanned when the model gave no entryDate at all.
        if intent.entryDate:
            entry_date = resolve_entry_date(intent.entryDate, today=self.today)
        else:
            entry_date = resolve_entry_date(text, today=self.today)
        entry_date = entry_date or self.today.isoformat()
        return self._dispatch(intent, entry_date, setting)

    def _dispatch(
        self,
        intent: Union[IntentResult, UnknownIntent],
        entry_date: str,
        setting: AIServiceSetting,
    ) -> CoachResponse:
        user_id = self.user.id
        if isinstance(intent, LogFoodIntent):
            result = process_food_input(self.db, user_id, intent.data, entry_date)
            if result.metadata and result.metadata.get("is_fallback"):
                return self._offer_food_options(setting, result.metadata)
            return result
        if isinstance(intent, LogExerciseIntent):
            return process_exercise_input(self.db, user_id, intent.data, entry_date)
        if isinstance(intent, LogMeasurementIntent):
            return process_measurement_input(self.db, user_id, intent.data, entry_date)
        if isinstance(intent, LogWaterIntent):
            return process_water_input(self.db, user_id, intent.data, entry_date)
        if isinstance(intent, (AskQuestionIntent, ChatIntent)):
            return process_chat_input(intent)

        logger.info("coach_unknown_intent transaction_id=%s intent=%s", self.transaction_id, intent.intent)
        return CoachResponse(action="none", response=intent.response or UNKNOWN_INTENT_MESSAGE)

    def _offer_food_options(self, setting: AIServiceSetting, fallback: dict[str, Any]) -> CoachResponse:
        food_name = str(fallback.get("foodName") or "")
        unit = str(fallback.get("unit") or "serving")
        messages = [
            {"role": "system", "content": render_food_options_system_prompt()},
            {"role": "user", "content": food_options_request(food_name, unit)},
        ]
        raw = self.gateway.complete(
            self.db,
            self.user.id,
            messages,
            setting.id,
            cache_key=f"food_options:{setting.id}:{food_name.lower()}:{unit.lower()}",
        )
        options = parse_food_options(raw)
        if not options:
            logger.warning(
                "coach_food_options_empty transaction_id=%s food=%s", self.transaction_id, food_name
            )
            return CoachResponse(
                action="none",
                response=(
                    f'Sorry, I couldn\'t find "{food_name}" or generate options for it. '
                    "Please check your AI settings or try a different name."
                ),
            )

        pending = PendingFoodChoice(
            foodOptions=options,
            mealType=str(fallback.get("mealType") or "snacks"),
            quantity=fallback.get("quantity") or 1,
            unit=unit,
            entryDate=fallback.get("entryDate"),
        )
        self._transition(CoachState.awaiting_food_choice)
        return CoachResponse(
            action="food_options",
            response=format_food_options(food_name, options),
            metadata=pending.model_dump(mode="json"),
        )
