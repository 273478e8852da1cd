from typing import Union

from sparky.core.contracts import CoachResponse
from sparky.services.intent import AskQuestionIntent, ChatIntent

DEFAULT_CHAT_RESPONSE = "Okay, what would you like to talk about?"


def process_chat_input(intent: Union[AskQuestionIntent, ChatIntent]) -> CoachResponse:
    return CoachResponse(
        action="advice" if intent.intent == "ask_question" else "chat",
        response=intent.response or DEFAULT_CHAT_RESPONSE,
    )
