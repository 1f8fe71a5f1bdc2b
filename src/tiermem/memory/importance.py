"""
Importance evaluator

Scores raw text in [0, 1] with one completion call per distinct
(content type, text). Results are cached by content hash for a short TTL.

Return values:
- float in [0, 1]: the score
- None: unknown (provider failure or unparseable output); never cached
"""

from __future__ import annotations

import hashlib
import logging
import re

from ..core.errors import ParseError, ProviderError
from ..llm.providers.base import Provider
from .cache import TTLCache
from .types import ContentType

logger = logging.getLogger(__name__)

IMPORTANCE_PROMPT = """On a scale of 0 to 1, how likely is the following content to be important to remember for later recall? Consider the user's goals, emotional state, stated intentions, and the overall context.

Content Type: {content_type}
User ID: {user_id}
Session ID: {session_id}

Guidance: {guidance}

Content:
---
{content}
---

Provide only the score. Importance Score:"""

IMPORTANCE_GUIDANCE: dict[ContentType, str] = {
    ContentType.USER_CHAT: (
        "Focus on user reflections, goals, decisions, strong emotions, key facts about them "
        "or others. Ignore chit-chat, greetings and simple questions unless they reveal "
        "deeper context."
    ),
    ContentType.AI_RESPONSE: (
        "Focus on summaries, insights and key information the user might refer back to. "
        "Ignore generic acknowledgments and conversational filler."
    ),
    ContentType.UPLOADED_FILE_EVENT: (
        "High importance if the file seems significant (a resume, a report). "
        "Lower if generic (a casual photo)."
    ),
    ContentType.UPLOADED_DOCUMENT_CONTENT: (
        "Score the likely relevance and significance of the document content itself "
        "(meeting notes versus a shopping list)."
    ),
    ContentType.IMAGE_ANALYSIS: (
        "Score whether the analysis reveals significant objects, scenes or information "
        "relevant to the user's context or goals."
    ),
    ContentType.DEFAULT: (
        "Evaluate general significance, emotional weight, relevance to goals, or factual "
        "content that might be needed later."
    ),
}

HEURISTIC_KEYWORDS = (
    "important", "remember", "goal", "plan", "deadline",
    "project", "idea", "insight", "feeling", "realized",
)

_NUMBER_RE = re.compile(r"-?\d*\.?\d+")


def parse_score(text: str) -> float:
    """Extract the first number of a completion as a score.

    Raises:
        ParseError: no number, or a number outside [0, 1]
    """
    match = _NUMBER_RE.search(text or "")
    if not match:
        raise ParseError("no score in importance response", raw=text or "")
    value = float(match.group(0))
    if not 0.0 <= value <= 1.0:
        raise ParseError(f"importance score out of range: {value}", raw=text)
    return value


def heuristic_score(text: str, content_type: ContentType | str = ContentType.DEFAULT) -> float:
    """Offline estimate used when the provider cannot score (clamped to [0.1, 1.0])."""
    content_type = ContentType.parse(content_type)
    score = 0.5
    if len(text) > 500:
        score += 0.2
    if len(text) < 50:
        score -= 0.2
    lowered = text.lower()
    if any(kw in lowered for kw in HEURISTIC_KEYWORDS):
        score += 0.3
    if content_type == ContentType.UPLOADED_DOCUMENT_CONTENT:
        score += 0.1
    return max(0.1, min(1.0, score))


class ImportanceEvaluator:
    """LLM-backed importance scoring with a content-hash TTL cache"""

    def __init__(self, provider: Provider, cache: TTLCache):
        self.provider = provider
        self.cache = cache

    @staticmethod
    def cache_key(text: str, content_type: ContentType) -> str:
        return hashlib.sha256(f"{content_type.value}\x00{text}".encode()).hexdigest()

    def build_prompt(
        self, text: str, content_type: ContentType, user_id: str = "", session_id: str = ""
    ) -> str:
        return IMPORTANCE_PROMPT.format(
            content_type=content_type.value,
            user_id=user_id or "unknown",
            session_id=session_id or "unknown",
            guidance=IMPORTANCE_GUIDANCE.get(content_type, IMPORTANCE_GUIDANCE[ContentType.DEFAULT]),
            content=text,
        )

    async def evaluate(
        self,
        text: str,
        content_type: ContentType | str = ContentType.USER_CHAT,
        *,
        force_important: bool = False,
        user_id: str = "",
        session_id: str = "",
    ) -> float | None:
        """
        Score ``text``.

        Returns:
            1.0 when forced, 0.0 for empty text, the (cached) model score, or
            None when the score is unknown
        """
        if force_important:
            return 1.0
        if not text or not text.strip():
            return 0.0

        content_type = ContentType.parse(content_type)
        key = self.cache_key(text, content_type)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        prompt = self.build_prompt(text, content_type, user_id, session_id)
        try:
            response = await self.provider.complete(prompt)
            score = parse_score(response)
        except ProviderError as e:
            logger.warning(f"[Importance] Provider failed, score unknown: {e}")
            return None
        except ParseError as e:
            logger.warning(f"[Importance] Unparseable score {e.raw!r}, score unknown")
            return None

        self.cache.set(key, score)
        logger.debug(f"[Importance] {content_type.value} scored {score:.2f}")
        return score
