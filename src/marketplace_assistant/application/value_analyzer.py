"""Decides which finished turns are worth remembering.

Cheap checks run first so the optional classifier is only consulted for turns
that already look like useful informational answers.
"""

from __future__ import annotations

import re

from loguru import logger

from marketplace_assistant.application.background import BackgroundTasks
from marketplace_assistant.application.exceptions import KnowledgeStoreUnavailableError
from marketplace_assistant.application.intent import COUNTRIES, NICHES
from marketplace_assistant.domain.models import (
    ChatTurn,
    ContentType,
    ItemMetadata,
    KnowledgeItem,
    ValueAssessment,
)
from marketplace_assistant.domain.protocols import IKnowledgeStore, IValueClassifier

PREFERENCE_IMPORTANCE = 1.5
MEMORY_IMPORTANCE = 2.0
CONVERSATION_IMPORTANCE = 1.0

_BOILERPLATE_RE = re.compile(
    r"^\s*(i'?m sorry|sorry|i apologi[sz]e|unfortunately,? i (can'?t|cannot)|"
    r"i (can'?t|cannot|am unable to) help|an error occurred|something went wrong|"
    r"please try again)\b",
    re.IGNORECASE,
)
_TOOL_CONFIRMATION_RE = re.compile(
    r"^\s*(filters? (applied|cleared|updated)|i'?ve applied|applied (the )?filters?|"
    r"done[.!]?$|added .{1,80} to (your )?cart|opening /?\w+|navigating to|"
    r"here are (the|your) (filtered )?results)",
    re.IGNORECASE,
)
_MEMORY_RE = re.compile(r"\b(remember that|don'?t forget|keep in mind|note that)\b", re.IGNORECASE)
_PREFERENCE_RE = re.compile(
    r"\b(my name is|call me|i work (as|at|for|in)|i am an? |i'?m an? |i prefer|i like|i love|"
    r"i only want|i usually|my budget is|my (company|website|site|business|niche) is|"
    r"i'?m looking for|i am looking for|i'?m based in|i am based in)",
    re.IGNORECASE,
)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "pricing": ("price", "budget", "cheap", "affordable", "expensive", "cost", "$"),
    "authority": ("domain authority", "domain rating", " da ", " dr ", "authority"),
    "traffic": ("traffic", "visitors"),
    "spam": ("spam",),
    "cart": ("cart", "checkout"),
    "orders": ("order", "orders"),
    "guest_posts": ("guest post", "backlink", "link building"),
}


def extract_topics(text: str) -> set[str]:
    """Marketplace topics mentioned in *text*."""
    lowered = f" {text.lower()} "
    topics = {t for t, words in TOPIC_KEYWORDS.items() if any(w in lowered for w in words)}
    for table in (NICHES, COUNTRIES):
        for code, words in table.items():
            if any(re.search(rf"\b{re.escape(w)}\b", lowered) for w in words):
                topics.add(code)
    return topics


def is_tool_confirmation(text: str) -> bool:
    return bool(_TOOL_CONFIRMATION_RE.search(text))


def extract_fact(user_message: str) -> tuple[ContentType, str] | None:
    """First-person fact stated in *user_message*, with its content type."""
    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(user_message.strip()) if s.strip()]
    memory = [s for s in sentences if _MEMORY_RE.search(s)]
    if memory:
        return ContentType.MEMORY, " ".join(memory)
    preference = [s for s in sentences if _PREFERENCE_RE.search(s)]
    if preference:
        return ContentType.PREFERENCE, " ".join(preference)
    return None


class ValueAnalyzer:
    """Filters finished turns and persists the valuable ones.

    Parameters
    ----------
    store:
        Where valuable turns are written. Writes happen in the background.
    classifier:
        Optional YES/NO model asked about plain informational answers.
    min_message_length:
        User messages shorter than this are never stored.
    min_useful_answer_length:
        Assistant answers shorter than this are not stored as conversation.
    """

    def __init__(
        self,
        store: IKnowledgeStore,
        *,
        classifier: IValueClassifier | None = None,
        min_message_length: int = 10,
        min_useful_answer_length: int = 100,
        background: BackgroundTasks | None = None,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.min_message_length = min_message_length
        self.min_useful_answer_length = min_useful_answer_length
        self.background = background or BackgroundTasks()

    def assess(self, user_message: str, assistant_text: str, *, tool_ran: bool = False) -> ValueAssessment:
        """Heuristic verdict for one turn. No I/O."""
        message = user_message.strip()
        answer = assistant_text.strip()

        if len(message) < self.min_message_length:
            return ValueAssessment(should_store=False, reason="message too short")
        if not answer or _BOILERPLATE_RE.search(answer):
            return ValueAssessment(should_store=False, reason="boilerplate answer")

        fact = extract_fact(message)
        if fact is not None:
            content_type, content = fact
            return ValueAssessment(
                should_store=True,
                content_type=content_type,
                importance_score=(
                    MEMORY_IMPORTANCE if content_type is ContentType.MEMORY else PREFERENCE_IMPORTANCE
                ),
                content=content,
                topics=extract_topics(content),
                reason="first-person fact",
            )

        if tool_ran or is_tool_confirmation(answer):
            return ValueAssessment(should_store=False, reason="tool confirmation")
        if len(answer) < self.min_useful_answer_length:
            return ValueAssessment(should_store=False, reason="answer too short")

        return ValueAssessment(
            should_store=True,
            content_type=ContentType.CONVERSATION,
            importance_score=CONVERSATION_IMPORTANCE,
            content=f"User: {message}\nAssistant: {answer}",
            topics=extract_topics(f"{message} {answer}"),
            reason="informational answer",
        )

    async def evaluate(self, user_message: str, assistant_text: str, *, tool_ran: bool = False) -> ValueAssessment:
        """``assess`` plus the optional classifier for conversation turns."""
        verdict = self.assess(user_message, assistant_text, tool_ran=tool_ran)
        if not verdict.should_store or verdict.content_type is not ContentType.CONVERSATION:
            return verdict
        if self.classifier is None:
            return verdict
        try:
            valuable = await self.classifier.is_valuable(user_message, assistant_text)
        except Exception:
            logger.exception("Value classifier failed, keeping heuristic verdict")
            return verdict
        if not valuable:
            verdict.should_store = False
            verdict.reason = "classifier rejected"
        return verdict

    async def analyze_and_store(self, turn: ChatTurn) -> str | None:
        """Assess *turn* and write it to the knowledge store if worth keeping.

        Store failures are logged and dropped; returns the item id when stored.
        """
        verdict = await self.evaluate(turn.user_message, turn.assistant_text, tool_ran=turn.tool_ran)
        if not verdict.should_store:
            logger.debug("Turn not stored | user={} reason={}", turn.user_id, verdict.reason)
            return None

        metadata = ItemMetadata(source="chat", importance_hint=verdict.reason)
        if turn.tool_invocation is not None:
            metadata.extra["tool"] = turn.tool_invocation.name
        if turn.used_context_ids:
            metadata.extra["context_ids"] = list(turn.used_context_ids)

        item = KnowledgeItem(
            user_id=turn.user_id,
            content=verdict.content,
            content_type=verdict.content_type,
            metadata=metadata,
            topics=verdict.topics,
            importance_score=verdict.importance_score,
        )
        try:
            item_id = await self.store.write(item)
        except KnowledgeStoreUnavailableError as exc:
            logger.warning("Knowledge write dropped | user={} error={}", turn.user_id, exc)
            return None
        logger.info(
            "Turn stored | user={} id={} type={} importance={}",
            turn.user_id,
            item_id,
            verdict.content_type.value,
            verdict.importance_score,
        )
        return item_id

    def schedule(self, turn: ChatTurn) -> None:
        """Run ``analyze_and_store`` without blocking the caller."""
        self.background.spawn(self.analyze_and_store(turn), name="value-analyzer")
