"""
Provider base class

Every provider exposes two operations:
- embed(texts) -> vectors (may return fewer vectors than inputs; positional)
- complete(prompt) -> text

Failures raise ProviderError; ``retryable`` tells the task queue whether the
job should be tried again. Backoff between attempts is the queue's concern.
"""

from abc import ABC, abstractmethod


class Provider(ABC):
    """Embedding/completion provider base class"""

    def __init__(self, name: str):
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed a batch of texts.

        Args:
            texts: inputs, in order

        Returns:
            vectors for a prefix of ``texts`` (len <= len(texts)); vector i
            belongs to texts[i]
        """

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """
        Run a single-turn completion.

        Args:
            prompt: full prompt text

        Returns:
            model output text
        """

    async def close(self) -> None:
        """Release network resources (no-op by default)."""
