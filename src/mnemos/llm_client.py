"""Completion gateway used for entity extraction.

Engines depend only on the LLMClient Protocol. GroqLLMClient backs it with
AsyncGroq chat completions.
"""

from typing import Protocol

from groq import AsyncGroq

from .errors import CompletionError

DEFAULT_MODEL = "llama-3.1-70b-versatile"


class LLMClient(Protocol):
    """Anything that can turn a prompt (and optional system prompt) into text."""

    async def complete(self, prompt: str, system: str | None = None) -> str: ...


class GroqLLMClient:
    """LLMClient over an AsyncGroq client.

    Sampling is kept cold by default since extraction output is parsed as
    JSON. Provider failures of any kind surface as CompletionError.
    """

    def __init__(
        self,
        client: AsyncGroq,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.1,
        max_tokens: int = 1000,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Run one chat completion and return the reply text ("" if there is none).

        Raises:
            CompletionError: If the provider call fails.
        """
        messages = [{"role": "user", "content": prompt}]
        if system:
            messages.insert(0, {"role": "system", "content": system})

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except Exception as e:
            raise CompletionError(f"Completion failed: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
