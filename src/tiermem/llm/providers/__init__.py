"""
Providers

- Provider: abstract embed/complete interface with health bookkeeping
- OpenAICompatProvider: any OpenAI-compatible HTTP API (httpx)
"""

from .base import Provider
from .openai_compat import OpenAICompatProvider, create_provider

__all__ = ["Provider", "OpenAICompatProvider", "create_provider"]
