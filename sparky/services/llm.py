import json
import logging
import os
import re
from functools import lru_cache
from typing import Any, Hashable, Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from sparky.core.cache import ResponseCache, build_food_options_cache
from sparky.core.security import DecryptionError, decrypt_api_key
from sparky.db.models import AIServiceSetting

logger = logging.getLogger("uvicorn.error")

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "1000"))

EMPTY_PROVIDER_CONTENT = "No response from AI service"
GOOGLE_SYSTEM_PROMPT_LIMIT = 1000

SERVICE_TYPES = (
    "openai",
    "openai_compatible",
    "anthropic",
    "google",
    "mistral",
    "groq",
    "ollama",
    "custom",
)

DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
    "anthropic": "claude-3-5-sonnet-20241022",
    "google": "gemini-pro",
    "mistral": "mistral-large-latest",
    "groq": "llama3-8b-8192",
}

Message = dict[str, Any]


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


class ProviderError(RuntimeError):
    def __init__(
        self,
        service_type: str,
        model: str,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
    ):
        super().__init__(message)
        self.service_type = service_type
        self.model = model
        self.status_code = status_code
        self.body = body


class ServiceConfigError(ValueError):
    pass


class ServiceNotFoundError(ServiceConfigError):
    pass


class InvalidMessagesError(ValueError):
    pass


class UnsupportedCapabilityError(ValueError):
    pass


def default_model(service_type: str) -> str:
    return DEFAULT_MODELS.get(service_type, "gpt-3.5-turbo")


def clean_system_prompt(text: str, limit: int = GOOGLE_SYSTEM_PROMPT_LIMIT) -> str:
    cleaned = re.sub(r"[^\w\s\-.,!?:;()\[\]{}'\"]", " ", text or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned[:limit]


def parse_data_url(url: str) -> Optional[tuple[str, str]]:
    """Split ``data:<mime>;base64,<data>`` into (mime, data)."""
    head, sep, data = (url or "").partition(";base64,")
    if not sep or not data:
        return None
    match = re.match(r"^data:(.+)$", head)
    if not match:
        return None
    return match.group(1), data


def has_image_parts(messages: list[Message]) -> bool:
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, list) and any(
            isinstance(part, dict) and part.get("type") == "image_url" for part in content
        ):
            return True
    return False


def _flatten_text_parts(messages: list[Message]) -> list[Message]:
    flattened: list[Message] = []
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, list):
            texts = [
                str(part.get("text", ""))
                for part in content
                if isinstance(part, dict) and part.get("type") == "text"
            ]
            content = "\n".join(t for t in texts if t)
        flattened.append({"role": msg.get("role", "user"), "content": content or ""})
    return flattened


def _system_text(messages: list[Message]) -> str:
    chunks: list[str] = []
    for msg in messages:
        if msg.get("role") != "system":
            continue
        content = msg.get("content")
        if isinstance(content, str):
            chunks.append(content)
        elif isinstance(content, list):
            chunks.extend(
                str(part.get("text", "")) for part in content if isinstance(part, dict) and part.get("type") == "text"
            )
    return "\n\n".join(c for c in chunks if c)


def validate_messages(messages: Any) -> list[Message]:
    if not isinstance(messages, list) or not messages:
        raise InvalidMessagesError("Invalid messages format.")
    for msg in messages:
        if not isinstance(msg, dict) or not isinstance(msg.get("role"), str):
            raise InvalidMessagesError("Invalid messages format.")
        if not isinstance(msg.get("content"), (str, list)):
            raise InvalidMessagesError("Invalid messages format.")
    return messages


_JSON_FENCE = re.compile(r"```json\s*\n?([\s\S]*?)\n?\s*```", re.IGNORECASE)


def extract_json_block(raw_text: str) -> str:
    match = _JSON_FENCE.search(raw_text or "")
    if match:
        return match.group(1).strip()
    return (raw_text or "").strip()


def parse_llm_json(raw_text: str) -> Any:
    try:
        return json.loads(extract_json_block(raw_text))
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid JSON response from LLM") from exc


class ProviderAdapter(Protocol):
    service_type: str
    supports_images: bool

    def complete(self, messages: list[Message]) -> str:
        ...


class _HTTPAdapter:
    supports_images = False

    def __init__(self, service_type: str, model: str, api_key: str, http: httpx.Client) -> None:
        self.service_type = service_type
        self.model = model
        self.api_key = api_key
        self.http = http

    def _post(self, url: str, headers: dict[str, str], payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.http.post(url, headers=headers, json=payload, timeout=_http_timeout())
        except httpx.HTTPError as exc:
            raise ProviderError(
                service_type=self.service_type,
                model=self.model,
                message=f"{self.service_type} request failed: {exc.__class__.__name__}",
            ) from exc
        if not response.is_success:
            body = (response.text or "").strip()[:1000]
            raise ProviderError(
                service_type=self.service_type,
                model=self.model,
                status_code=response.status_code,
                body=body,
                message=f"AI service API call error: {response.status_code} - {body or 'no response body'}",
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                service_type=self.service_type,
                model=self.model,
                status_code=response.status_code,
                body=(response.text or "")[:1000],
                message=f"{self.service_type} returned a non-JSON body",
            ) from exc
        return data if isinstance(data, dict) else {}


class OpenAIChatAdapter(_HTTPAdapter):
    """OpenAI chat-completions wire format, shared by several vendors."""

    BASE_URLS = {
        "openai": "https://api.openai.com/v1/chat/completions",
        "mistral": "https://api.mistral.ai/v1/chat/completions",
        "groq": "https://api.groq.com/openai/v1/chat/completions",
    }

    def __init__(
        self,
        service_type: str,
        model: str,
        api_key: str,
        http: httpx.Client,
        custom_url: Optional[str] = None,
    ) -> None:
        super().__init__(service_type, model, api_key, http)
        self.supports_images = service_type == "openai"
        if service_type in self.BASE_URLS:
            self.url = self.BASE_URLS[service_type]
        elif service_type == "openai_compatible":
            if not custom_url:
                raise ServiceConfigError("Custom URL is required for OpenAI-compatible service")
            self.url = f"{custom_url.rstrip('/')}/chat/completions"
        elif service_type == "custom":
            if not custom_url:
                raise ServiceConfigError("Custom URL is required for custom service")
            self.url = custom_url
        else:
            raise UnsupportedCapabilityError(f"Unsupported service type: {service_type}")

    def complete(self, messages: list[Message]) -> str:
        outgoing = messages if self.supports_images else _flatten_text_parts(messages)
        data = self._post(
            self.url,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            payload={"model": self.model, "messages": outgoing, "temperature": 0.7},
        )
        choices = data.get("choices") or []
        if choices and isinstance(choices[0], dict):
            text = (choices[0].get("message") or {}).get("content")
            if text:
                return str(text)
        return EMPTY_PROVIDER_CONTENT


class AnthropicAdapter(_HTTPAdapter):
    supports_images = True
    URL = "https://api.anthropic.com/v1/messages"

    def _convert_content(self, content: Any) -> Any:
        if not isinstance(content, list):
            return content
        blocks: list[dict[str, Any]] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text":
                blocks.append({"type": "text", "text": str(part.get("text", ""))})
            elif part.get("type") == "image_url":
                parsed = parse_data_url((part.get("image_url") or {}).get("url", ""))
                if not parsed:
                    logger.warning("anthropic_invalid_image_data_url")
                    continue
                mime_type, data = parsed
                blocks.append(
                    {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}}
                )
        return blocks

    def complete(self, messages: list[Message]) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": LLM_MAX_TOKENS,
            "messages": [
                {"role": msg["role"], "content": self._convert_content(msg.get("content"))}
                for msg in messages
                if msg.get("role") != "system"
            ],
        }
        system_prompt = _system_text(messages)
        if system_prompt:
            payload["system"] = system_prompt
        data = self._post(
            self.URL,
            headers={
                "x-api-key": self.api_key,
                "Content-Type": "application/json",
                "anthropic-version": "2023-06-01",
            },
            payload=payload,
        )
        blocks = data.get("content") or []
        if blocks and isinstance(blocks[0], dict) and blocks[0].get("text"):
            return str(blocks[0]["text"])
        return EMPTY_PROVIDER_CONTENT


class GoogleAdapter(_HTTPAdapter):
    supports_images = True

    @staticmethod
    def _parts(content: Any) -> list[dict[str, Any]]:
        if isinstance(content, str):
            return [{"text": content}]
        if not isinstance(content, list):
            return []
        parts: list[dict[str, Any]] = []
        saw_image = False
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text":
                parts.append({"text": str(part.get("text", ""))})
            elif part.get("type") == "image_url":
                saw_image = True
                parsed = parse_data_url((part.get("image_url") or {}).get("url", ""))
                if not parsed:
                    logger.warning("google_invalid_image_data_url")
                    continue
                mime_type, data = parsed
                parts.append({"inline_data": {"mime_type": mime_type, "data": data}})
        if not parts and saw_image:
            parts.append({"text": ""})
        return parts

    def build_body(self, messages: list[Message]) -> dict[str, Any]:
        contents: list[dict[str, Any]] = []
        # System text also travels as a leading user turn; systemInstruction only
        # receives a cleaned, truncated copy.
        for msg in messages:
            parts = self._parts(msg.get("content"))
            if not parts:
                continue
            role = "model" if msg.get("role") == "assistant" else "user"
            contents.append({"role": role, "parts": parts})
        if not contents:
            raise InvalidMessagesError("No valid content (text or image) found to send to Google AI.")
        body: dict[str, Any] = {"contents": contents}
        system_prompt = clean_system_prompt(_system_text(messages))
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return body

    def complete(self, messages: list[Message]) -> str:
        data = self._post(
            f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent?key={self.api_key}",
            headers={"Content-Type": "application/json"},
            payload=self.build_body(messages),
        )
        candidates = data.get("candidates") or []
        try:
            text = candidates[0]["content"]["parts"][0]["text"]
        except (IndexError, KeyError, TypeError):
            text = ""
        return str(text) if text else EMPTY_PROVIDER_CONTENT


class OllamaAdapter(_HTTPAdapter):
    def __init__(
        self,
        service_type: str,
        model: str,
        api_key: str,
        http: httpx.Client,
        custom_url: Optional[str] = None,
    ) -> None:
        super().__init__(service_type, model, api_key, http)
        if not custom_url:
            raise ServiceConfigError("Custom URL is required for Ollama service")
        self.url = f"{custom_url.rstrip('/')}/api/chat"

    def complete(self, messages: list[Message]) -> str:
        data = self._post(
            self.url,
            headers={"Content-Type": "application/json"},
            payload={"model": self.model, "messages": _flatten_text_parts(messages), "stream": False},
        )
        text = (data.get("message") or {}).get("content")
        return str(text) if text else EMPTY_PROVIDER_CONTENT


def build_adapter(setting: AIServiceSetting, api_key: str, http: httpx.Client) -> ProviderAdapter:
    service_type = (setting.service_type or "").strip().lower()
    model = (setting.model_name or "").strip() or default_model(service_type)
    if service_type in {"openai", "openai_compatible", "mistral", "groq", "custom"}:
        return OpenAIChatAdapter(service_type, model, api_key, http, custom_url=setting.custom_url)
    if service_type == "anthropic":
        return AnthropicAdapter(service_type, model, api_key, http)
    if service_type == "google":
        return GoogleAdapter(service_type, model, api_key, http)
    if service_type == "ollama":
        return OllamaAdapter(service_type, model, api_key, http, custom_url=setting.custom_url)
    raise UnsupportedCapabilityError(f"Unsupported service type: {setting.service_type}")


def load_service_setting(db: Session, user_id: int, service_config_id: int) -> AIServiceSetting:
    setting = (
        db.query(AIServiceSetting)
        .filter(AIServiceSetting.id == service_config_id, AIServiceSetting.user_id == user_id)
        .first()
    )
    if not setting:
        raise ServiceNotFoundError("AI service setting not found.")
    if not setting.encrypted_api_key or not setting.api_key_iv:
        raise ServiceConfigError("API key missing for selected AI service.")
    return setting


class LLMGateway(Protocol):
    def complete(
        self,
        db: Session,
        user_id: int,
        messages: list[Message],
        service_config_id: int,
        cache_key: Optional[Hashable] = None,
    ) -> str:
        ...


class ProviderGateway:
    """Normalizes every supported vendor into ``complete(...) -> str``.

    One HTTP call per request, no retries. ``cache_key`` opts a call into the
    injected response cache.
    """

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        cache: Optional[ResponseCache] = None,
    ) -> None:
        self.http_client = http_client
        self.cache = cache

    def complete(
        self,
        db: Session,
        user_id: int,
        messages: list[Message],
        service_config_id: int,
        cache_key: Optional[Hashable] = None,
    ) -> str:
        validate_messages(messages)
        if cache_key is not None and self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info("llm_cache_hit user_id=%s service_config_id=%s", user_id, service_config_id)
                return cached

        setting = load_service_setting(db, user_id, service_config_id)
        try:
            api_key = decrypt_api_key(setting.encrypted_api_key, setting.api_key_iv)
        except DecryptionError:
            logger.exception("llm_decryption_failed user_id=%s service_config_id=%s", user_id, setting.id)
            raise

        if self.http_client is not None:
            content = self._dispatch(setting, api_key, messages, self.http_client)
        else:
            with httpx.Client(timeout=_http_timeout()) as client:
                content = self._dispatch(setting, api_key, messages, client)

        if cache_key is not None and self.cache is not None and content != EMPTY_PROVIDER_CONTENT:
            self.cache.set(cache_key, content)
        return content

    def _dispatch(
        self, setting: AIServiceSetting, api_key: str, messages: list[Message], http: httpx.Client
    ) -> str:
        adapter = build_adapter(setting, api_key, http)
        if has_image_parts(messages) and not adapter.supports_images:
            raise UnsupportedCapabilityError(
                f"Image analysis is not supported for the selected AI service type: {adapter.service_type}. "
                "Please select a multimodal model like Google Gemini in settings."
            )
        logger.info(
            "llm_request service_type=%s model=%s messages=%s", adapter.service_type, getattr(adapter, "model", ""), len(messages)
        )
        return adapter.complete(messages)


@lru_cache(maxsize=1)
def get_llm_gateway() -> LLMGateway:
    return ProviderGateway(cache=build_food_options_cache())
