from app.services.llm.base import CompletionError, LLMProvider, LLMResponse
from app.services.llm.openai_provider import OpenAIProvider

__all__ = ["CompletionError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
