"""
Model provider layer (embeddings + completions).
"""

from .providers import OpenAICompatProvider, Provider, create_provider

__all__ = ["Provider", "OpenAICompatProvider", "create_provider"]
