"""
Narrative writer

Prompts and response parsing for the two generative steps:
- episode title / narrative / tags (consolidation and re-summarization)
- thought name / description / confidence (thought synthesis)

Parsing is strict: anything that does not match the expected layout raises
ParseError, and callers decide on the fallback.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from ..core.errors import ParseError, ProviderError
from ..llm.providers.base import Provider
from .types import Chunk, Episode

logger = logging.getLogger(__name__)

FALLBACK_TITLE = "Untitled Episode"
FALLBACK_NARRATIVE = "This episode was automatically generated from related content."

EPISODE_PROMPT = """I have the following related memories or content from a conversation.
Please create a clear title, a short summary and a few tags that capture the key points.

Guidelines:
1. Use specific names and details from the text.
2. Be factual: summarize only what is actually in the content.
3. Attribute experiences and opinions clearly (who said or felt what).
4. Focus on what would be worth remembering later.
5. Tags are 2-6 lowercase topics or emotions, comma separated.

CONTENT:
{content}

Format your response exactly as:
Title: <a clear, specific title>

Summary: <one factual paragraph>

Tags: <tag1, tag2, tag3>"""

THOUGHT_PROMPT = """The following episodes come from the same person's memory.
Identify one overarching pattern, theme or insight that connects them.

EPISODES:
{episodes}

Shared tags: {tags}

Respond exactly as:
NAME: <a short name for the pattern>
DESCRIPTION: <one or two sentences describing it>
CONFIDENCE: <a number between 0 and 1>"""

_TITLE_RE = re.compile(r"^\s*\**title\**\s*:\**\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_SUMMARY_RE = re.compile(
    r"^\s*\**summary\**\s*:\**\s*(.*?)(?=^\s*\**tags\**\s*:|\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
_TAGS_RE = re.compile(r"^\s*\**tags\**\s*:\**\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_NAME_RE = re.compile(r"^\s*\**name\**\s*:\**\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_DESC_RE = re.compile(
    r"^\s*\**description\**\s*:\**\s*(.*?)(?=^\s*\**confidence\**\s*:|\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
_CONF_RE = re.compile(r"^\s*\**confidence\**\s*:\**\s*([0-9]*\.?[0-9]+)", re.IGNORECASE | re.MULTILINE)


@dataclass
class EpisodeNarrative:
    title: str
    narrative: str
    tags: list[str] = field(default_factory=list)


@dataclass
class ThoughtDraft:
    name: str
    description: str
    confidence: float


def normalize_tags(raw: str) -> list[str]:
    tags: list[str] = []
    for part in re.split(r"[,;\n]", raw):
        tag = part.strip().strip("#*[]").strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
    return tags[:8]


def parse_episode_narrative(text: str) -> EpisodeNarrative:
    """Parse a ``Title: / Summary: / Tags:`` response."""
    title_m = _TITLE_RE.search(text or "")
    summary_m = _SUMMARY_RE.search(text or "")
    if not title_m or not summary_m or not summary_m.group(1).strip():
        raise ParseError("episode narrative missing Title or Summary", raw=text or "")
    tags_m = _TAGS_RE.search(text)
    return EpisodeNarrative(
        title=title_m.group(1).strip().strip("*\"'[]"),
        narrative=" ".join(summary_m.group(1).split()),
        tags=normalize_tags(tags_m.group(1)) if tags_m else [],
    )


def parse_thought(text: str) -> ThoughtDraft:
    """Parse a ``NAME: / DESCRIPTION: / CONFIDENCE:`` response."""
    name_m = _NAME_RE.search(text or "")
    desc_m = _DESC_RE.search(text or "")
    if not name_m or not desc_m or not desc_m.group(1).strip():
        raise ParseError("thought missing NAME or DESCRIPTION", raw=text or "")
    conf_m = _CONF_RE.search(text)
    confidence = float(conf_m.group(1)) if conf_m else 0.5
    if not 0.0 <= confidence <= 1.0:
        raise ParseError(f"thought confidence out of range: {confidence}", raw=text)
    return ThoughtDraft(
        name=name_m.group(1).strip().strip("*\"'[]"),
        description=" ".join(desc_m.group(1).split()),
        confidence=confidence,
    )


class NarrativeWriter:
    """Turns chunks into episode narratives and episode groups into thought drafts."""

    def __init__(self, provider: Provider, max_content_chars: int = 8000):
        self.provider = provider
        self.max_content_chars = max_content_chars

    def _join_chunks(self, chunks: list[Chunk]) -> str:
        parts: list[str] = []
        used = 0
        for chunk in chunks:
            text = chunk.text.strip()
            if not text:
                continue
            if used + len(text) > self.max_content_chars:
                parts.append(text[: max(0, self.max_content_chars - used)])
                break
            parts.append(text)
            used += len(text)
        return "\n\n---\n\n".join(parts)

    async def write_episode(self, chunks: list[Chunk]) -> EpisodeNarrative:
        """
        Generate title, narrative and tags for a set of chunks.

        Raises:
            ProviderError: completion call failed
            ParseError: completion did not follow the format
        """
        prompt = EPISODE_PROMPT.format(content=self._join_chunks(chunks))
        response = await self.provider.complete(prompt)
        return parse_episode_narrative(response)

    async def write_episode_or_fallback(self, chunks: list[Chunk]) -> EpisodeNarrative:
        """Like write_episode, but never fails: falls back to a placeholder title."""
        try:
            return await self.write_episode(chunks)
        except (ProviderError, ParseError) as e:
            logger.warning(f"[Narrative] Falling back to placeholder narrative: {e}")
            first = next((c.text.strip() for c in chunks if c.text.strip()), "")
            return EpisodeNarrative(
                title=FALLBACK_TITLE,
                narrative=first[:500] if first else FALLBACK_NARRATIVE,
            )

    async def write_thought(self, episodes: list[Episode], shared_tags: list[str]) -> ThoughtDraft:
        """
        Draft a thought connecting the given episodes.

        Raises:
            ProviderError: completion call failed
            ParseError: completion did not follow the format
        """
        lines = [
            f"- {ep.title or FALLBACK_TITLE}: {ep.narrative[:600]}" for ep in episodes
        ]
        prompt = THOUGHT_PROMPT.format(
            episodes="\n".join(lines),
            tags=", ".join(shared_tags) if shared_tags else "(none)",
        )
        response = await self.provider.complete(prompt)
        return parse_thought(response)
