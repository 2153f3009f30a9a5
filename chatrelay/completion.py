"""
Embedding and text completion for the @bot responder.

Uses the OpenAI Chat Completions and Embeddings APIs (or any compatible
endpoint via ``base_url``).
"""
from __future__ import annotations

import logging
import os
from typing import Any, Protocol

from openai import OpenAI, OpenAIError

from .constants import DEFAULT_SYSTEM_PROMPT
from .errors import CompletionUnavailable, EmbeddingUnavailable

logger = logging.getLogger("chatrelay.completion")


class CompletionClient(Protocol):
    """Narrow interface the responder consumes."""

    def embed(self, text: str) -> list[float]:
        """Embedding vector for `text`; raises EmbeddingUnavailable."""
        ...

    def complete(self, query: str, context: str) -> str:
        """Answer `query` given `context`; raises CompletionUnavailable."""
        ...


def build_messages(query: str, context: str, system_prompt: str) -> list[dict[str, Any]]:
    """Chat Completions messages for a query with an optional history block."""
    if context:
        user = f"Here is the chat history:\n{context}\nUser: {query}"
    else:
        user = query
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user},
    ]


class OpenAICompletionClient:
    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-3.5-turbo",
        embedding_model: str = "text-embedding-ada-002",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        base_url: str | None = None,
        timeout: float = 30.0,
        max_tokens: int | None = None,
    ) -> None:
        self.model = model
        self.embedding_model = embedding_model
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client: OpenAI | None = None

    def _get_client(self) -> OpenAI:
        # Built on first use; a missing API key surfaces per request.
        if self._client is None:
            self._client = OpenAI(
                api_key=self._api_key or os.environ.get("OPENAI_API_KEY"),
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=1,
            )
        return self._client

    def embed(self, text: str) -> list[float]:
        try:
            response = self._get_client().embeddings.create(
                model=self.embedding_model, input=text
            )
            return list(response.data[0].embedding)
        except (OpenAIError, IndexError, AttributeError) as e:
            logger.warning("Embedding request failed model=%s err=%s", self.embedding_model, e)
            raise EmbeddingUnavailable(f"embedding failed: {e}") from e

    def complete(self, query: str, context: str) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": build_messages(query, context, self.system_prompt),
        }
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        try:
            response = self._get_client().chat.completions.create(**kwargs)
            content = response.choices[0].message.content
        except (OpenAIError, IndexError, AttributeError) as e:
            logger.warning("Completion request failed model=%s err=%s", self.model, e)
            raise CompletionUnavailable(f"completion failed: {e}") from e
        if not content:
            raise CompletionUnavailable("completion returned no content")
        if response.usage:
            logger.debug(
                "Completion usage input_tokens=%s output_tokens=%s",
                response.usage.prompt_tokens,
                response.usage.completion_tokens,
            )
        return content
