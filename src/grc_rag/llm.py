"""Generation model client (OpenAI or Ollama chat models)."""
from __future__ import annotations

import logging
import os

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

from .config import ModelSettings
from .errors import ConfigurationError, GenerationError

logger = logging.getLogger(__name__)


def build_chat_model(model_settings: ModelSettings) -> BaseChatModel:
    if model_settings.llm_provider == "openai":
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set but llm_provider=openai")
        openai_kwargs = {
            "model": model_settings.llm_model,
            "temperature": 0.7,
            "max_retries": 2,
            "max_tokens": model_settings.max_output_tokens,
            "api_key": api_key,
        }
        if model_settings.openai_api_base:
            openai_kwargs["base_url"] = model_settings.openai_api_base
        return ChatOpenAI(**openai_kwargs)
    return ChatOllama(
        model=model_settings.llm_model,
        base_url=model_settings.llm_base_url,
        temperature=0.7,
        num_ctx=model_settings.max_input_tokens,
        num_predict=model_settings.max_output_tokens,
    )


class LLMService:
    """Wraps the chat model behind a ``complete(prompt, temperature)`` call."""

    def __init__(self, llm: BaseChatModel | None = None, model_settings: ModelSettings | None = None) -> None:
        self.model_settings = model_settings or ModelSettings()
        self.llm = llm if llm is not None else build_chat_model(self.model_settings)

    @property
    def model_name(self) -> str:
        for attribute in ("model_name", "model"):
            value = getattr(self.llm, attribute, None)
            if isinstance(value, str) and value:
                return value
        return self.model_settings.llm_model

    def complete(self, prompt: str, temperature: float | None = None) -> str:
        llm = self.llm
        if temperature is not None and "temperature" in type(llm).model_fields:
            llm = llm.model_copy(update={"temperature": temperature})
        try:
            response = llm.invoke([HumanMessage(content=prompt)])
        except Exception as exc:  # noqa: BLE001
            raise GenerationError(f"Generation failed: {exc}") from exc
        return self._text_of(response)

    @staticmethod
    def _text_of(message: BaseMessage) -> str:
        if isinstance(message.content, str):
            return message.content.strip()
        # LangChain >=0.2 may return a list of parts
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in message.content
        ).strip()
