"""Read access to the operator-managed ``admin_config`` documents."""

import re
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import AdminConfig

logger = get_logger("admin_config")

AI_SETTINGS_KEY = "ai_settings"

DEFAULT_SYSTEM_PROMPT = "You are the virtual assistant of a travel agency."
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 500
DEFAULT_FALLBACK_MESSAGE = "Sorry, I did not fully understand."

_FLOAT_PREFIX_RE = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_INT_PREFIX_RE = re.compile(r"^\s*[+-]?\d+")


class ConfigMissingError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def parse_float_prefix(value: Any, default: float) -> float:
    """Leading-number float parse: ``"0.5abc"`` -> 0.5, ``"abc"`` -> default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if value else default
    if isinstance(value, str):
        match = _FLOAT_PREFIX_RE.match(value)
        if match:
            return float(match.group(0))
    return default


def parse_int_prefix(value: Any, default: int) -> int:
    """Leading-digits int parse: ``"300 tokens"`` -> 300, ``"x"`` -> default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value) if value else default
    if isinstance(value, str):
        match = _INT_PREFIX_RE.match(value)
        if match:
            return int(match.group(0))
    return default


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class AISettings:
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    openai_api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    fallback_message: str = DEFAULT_FALLBACK_MESSAGE
    zapi_api_key: Optional[str] = None
    zapi_instance_id: Optional[str] = None
    zapi_client_token: Optional[str] = None
    zapi_base_url: Optional[str] = None

    @classmethod
    def from_document(cls, data: Optional[dict]) -> "AISettings":
        data = data or {}
        return cls(
            system_prompt=data.get("systemPrompt") or DEFAULT_SYSTEM_PROMPT,
            openai_api_key=_clean(data.get("openaiApiKey")),
            model=data.get("openaiModel") or DEFAULT_MODEL,
            temperature=parse_float_prefix(data.get("openaiTemperature"), DEFAULT_TEMPERATURE),
            max_tokens=parse_int_prefix(data.get("openaiMaxTokens"), DEFAULT_MAX_TOKENS),
            fallback_message=data.get("fallbackMessage") or DEFAULT_FALLBACK_MESSAGE,
            zapi_api_key=_clean(data.get("zapiApiKey")),
            zapi_instance_id=_clean(data.get("zapiInstanceId")),
            zapi_client_token=_clean(data.get("zapiClientToken")),
            zapi_base_url=_clean(data.get("zapiBaseUrl")),
        )

    @property
    def gateway_configured(self) -> bool:
        return bool(self.zapi_api_key and self.zapi_instance_id) or bool(
            self.zapi_base_url and self.zapi_base_url.endswith("/send-text")
        )


def get_config_document(db: Session, key: str) -> Optional[dict]:
    row = db.query(AdminConfig).filter(AdminConfig.key == key).first()
    if row is None:
        return None
    return row.data if isinstance(row.data, dict) else None


def load_ai_settings(db: Session) -> AISettings:
    data = get_config_document(db, AI_SETTINGS_KEY)
    if data is None:
        logger.warning("AI settings document missing, using defaults")
    return AISettings.from_document(data)
