"""Rule-based context processor — keyword heuristics, no external calls."""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Any

from contextkeeper.connectors.models import EventType, NormalizedEvent
from contextkeeper.engines.context_processor.models import (
    EntityDraft,
    EntityKey,
    ExtractionResult,
    RelationshipDraft,
)
from contextkeeper.services.knowledge_graph_service import SHARED_PLATFORM

DECISION_KEYWORDS = (
    "decided",
    "decision",
    "we should",
    "let's use",
    "going with",
    "agreed",
    "consensus",
    "resolved",
    "conclusion",
    "final decision",
)
RATIONALE_KEYWORDS = ("because", "since", "due to", "reason", "rationale")

_ALTERNATIVE_PATTERNS = (
    re.compile(r"(?i)alternatives?:?\s*(.+)"),
    re.compile(r"(?i)other options?:?\s*(.+)"),
    re.compile(r"(?i)could also:?\s*(.+)"),
)
_CONSEQUENCE_PATTERNS = (
    re.compile(r"(?i)consequences?:?\s*(.+)"),
    re.compile(r"(?i)impact:?\s*(.+)"),
    re.compile(r"(?i)this means:?\s*(.+)"),
)
_CHANGE_REASON_PATTERNS = (
    re.compile(r"(?i)changed because:?\s*(.+)"),
    re.compile(r"(?i)updated to:?\s*(.+)"),
    re.compile(r"(?i)modified for:?\s*(.+)"),
)

_MAX_TITLE = 100
_UNMENTIONED_STRENGTH = 0.6
_FEATURE_FILE_STRENGTH = 0.5

# Event types whose file references are actual modifications.
_CODE_CHANGE_TYPES = frozenset({EventType.PULL_REQUEST, EventType.COMMIT, EventType.FILE_CHANGE})


# ── heuristics ────────────────────────────────────────────────────────────


def first_sentence(text: str) -> str:
    return text.split(".", 1)[0].strip()


def contains_decision(text: str) -> bool:
    lower = text.lower()
    return any(kw in lower for kw in DECISION_KEYWORDS)


def decision_title(text: str) -> str:
    """First sentence, truncated to 100 characters."""
    title = first_sentence(text)
    if not title:
        return "Decision"
    if len(title) > _MAX_TITLE:
        title = title[: _MAX_TITLE - 3] + "..."
    return title


def extract_rationale(text: str) -> str:
    """Sentence fragment starting at the first rationale keyword, or ``""``."""
    lower = text.lower()
    for keyword in RATIONALE_KEYWORDS:
        idx = lower.find(keyword)
        if idx != -1:
            return first_sentence(text[idx:])
    return ""


def _captures(patterns: tuple[re.Pattern[str], ...], text: str) -> list[str]:
    found = []
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            found.append(match.group(1).strip())
    return found


def extract_alternatives(text: str) -> list[str]:
    return _captures(_ALTERNATIVE_PATTERNS, text)


def extract_consequences(text: str) -> list[str]:
    return _captures(_CONSEQUENCE_PATTERNS, text)


def extract_change_reason(text: str) -> str:
    reasons = _captures(_CHANGE_REASON_PATTERNS, text)
    if reasons:
        return reasons[0]
    return first_sentence(text) or "File modification discussed"


def infer_feature_status(text: str) -> str:
    lower = text.lower()
    if "completed" in lower or "done" in lower:
        return "completed"
    if "working on" in lower or "in progress" in lower:
        return "in_progress"
    if "planning" in lower or "will" in lower:
        return "planned"
    return "in_progress"


def _mention_strength(text: str, path: str) -> float:
    lower = text.lower()
    if path.lower() in lower or PurePosixPath(path).name.lower() in lower:
        return 1.0
    return _UNMENTIONED_STRENGTH


# ── projection ────────────────────────────────────────────────────────────


def extract(event: NormalizedEvent) -> ExtractionResult:
    """Project one normalized event onto graph drafts.

    Always yields a discussion for the event itself; adds the author, the
    referenced files and features, and a decision when the text reads like
    one.
    """
    result = ExtractionResult()
    text = "\n".join(part for part in (event.title, event.content) if part)
    code_change = event.event_type in _CODE_CHANGE_TYPES

    def link(
        source: EntityKey,
        target: EntityKey,
        relationship_type: str,
        strength: float = 1.0,
        **attributes: Any,
    ) -> None:
        result.relationships.append(
            RelationshipDraft(
                source=source,
                target=target,
                relationship_type=relationship_type,  # type: ignore[arg-type]
                strength=strength,
                attributes=attributes,
            )
        )

    discussion = _discussion(event, text)
    result.entities.append(discussion)

    contributor: EntityDraft | None = None
    if event.author:
        contributor = EntityDraft(
            entity_type="contributor",
            platform=event.platform,
            platform_id=event.author,
            title=event.author,
            participants=[event.author],
            attributes={"last_active_at": event.timestamp.isoformat()},
        )
        result.entities.append(contributor)
        link(discussion.key, contributor.key, "introduced_by")

    if event.parent_id:
        parent = EntityKey(
            platform=event.platform, platform_id=event.parent_id, entity_type="discussion"
        )
        link(discussion.key, parent, "relates_to", link="reply")

    files: list[EntityDraft] = []
    for path in event.file_refs:
        attributes: dict[str, Any] = {"extension": PurePosixPath(path).suffix}
        if code_change:
            attributes["last_change_reason"] = extract_change_reason(text)
        file = EntityDraft(
            entity_type="file",
            platform=SHARED_PLATFORM,
            platform_id=path,
            title=path,
            attributes=attributes,
        )
        files.append(file)
        result.entities.append(file)
        link(file.key, discussion.key, "discussed_in")
        if code_change and contributor is not None:
            link(file.key, contributor.key, "modified_by")

    features: list[EntityDraft] = []
    for name in event.feature_refs:
        feature = EntityDraft(
            entity_type="feature",
            platform=SHARED_PLATFORM,
            platform_id=name,
            title=name,
            attributes={"status": infer_feature_status(text)},
        )
        features.append(feature)
        result.entities.append(feature)
        link(feature.key, discussion.key, "discussed_in")
        if code_change and contributor is not None:
            link(feature.key, contributor.key, "introduced_by")
        for file in files:
            link(feature.key, file.key, "relates_to", _FEATURE_FILE_STRENGTH)

    if contains_decision(text):
        decision = EntityDraft(
            entity_type="decision",
            platform=event.platform,
            platform_id=f"decision-{event.platform_id}",
            title=decision_title(event.content or event.title),
            content=text,
            participants=[event.author] if event.author else [],
            attributes={
                "status": "active",
                "rationale": extract_rationale(text),
                "alternatives": extract_alternatives(text),
                "consequences": extract_consequences(text),
                "source_event_id": event.platform_id,
                "decided_at": event.timestamp.isoformat(),
            },
        )
        result.entities.append(decision)
        link(decision.key, discussion.key, "discussed_in")
        if contributor is not None:
            link(decision.key, contributor.key, "introduced_by")
        for file in files:
            link(decision.key, file.key, "relates_to", _mention_strength(text, file.platform_id))
        for feature in features:
            link(decision.key, feature.key, "relates_to")

    return result


def _discussion(event: NormalizedEvent, text: str) -> EntityDraft:
    title = event.title or first_sentence(event.content)[:_MAX_TITLE] or event.platform_id
    attributes: dict[str, Any] = {
        "event_type": event.event_type.value,
        "state": event.state,
        "labels": list(event.labels),
        "thread_id": event.thread_id,
        "parent_id": event.parent_id,
    }
    for key in ("url", "number", "channel_id"):
        if event.metadata.get(key) is not None:
            attributes[key] = event.metadata[key]
    return EntityDraft(
        entity_type="discussion",
        platform=event.platform,
        platform_id=event.platform_id,
        title=title,
        content=text,
        participants=[event.author] if event.author else [],
        attributes=attributes,
    )


class RuleBasedContextProcessor:
    """Deterministic :class:`ContextProcessor` backed by :func:`extract`."""

    async def process(self, project_id: str, event: NormalizedEvent) -> ExtractionResult:
        return extract(event)
