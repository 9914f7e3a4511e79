from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import CompletionError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")

DEFAULT_MODEL = "gpt-4o-mini"


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = DEFAULT_MODEL,
        base_url: str = "https://api.openai.com/v1/chat/completions",
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise CompletionError(f"OpenAI request failed: {e}") from e

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise CompletionError(
                f"OpenAI API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            content = ""
            if data.get("choices"):
                message = data["choices"][0].get("message") or {}
                content = (message.get("content") or "").strip()
            response_model = data.get("model", model)
            usage = data.get("usage")
        except (ValueError, AttributeError, IndexError, KeyError, TypeError) as e:
            logger.error(f"OpenAI malformed response: {response.text[:300]}")
            raise CompletionError(f"OpenAI returned a malformed response: {e}", status_code=response.status_code) from e

        if not content:
            logger.warning("OpenAI returned an empty completion")

        return LLMResponse(content=content, model=response_model, usage=usage)
