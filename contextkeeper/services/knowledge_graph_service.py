"""KnowledgeGraphService — deduplicated entities, typed edges, and scoped reads.

Every operation takes a ``project_id`` and never returns data from another
project. Writes are keyed by natural key, so replaying the same events is
harmless.
"""

from __future__ import annotations

import re
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from contextkeeper.dao.knowledge_entity_dao import KnowledgeEntityDAO
from contextkeeper.dao.knowledge_relationship_dao import KnowledgeRelationshipDAO
from contextkeeper.models.knowledge_entity import (
    ENTITY_TYPES,
    KnowledgeEntity,
    KnowledgeEntityRevision,
)
from contextkeeper.models.knowledge_relationship import (
    RELATIONSHIP_TYPES,
    KnowledgeRelationship,
)
from contextkeeper.services import NotFoundError, ReferentialIntegrityError, ValidationError

log = structlog.get_logger("contextkeeper.graph")

# Platform tag of cross-platform nodes (files, features).
SHARED_PLATFORM = "project"

ARCHITECTURE_KEYWORDS = (
    "architecture",
    "design",
    "pattern",
    "structure",
    "framework",
    "database",
    "api",
    "microservice",
    "refactor",
    "migration",
)

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_./-]*")
_STOPWORDS = frozenset(
    {"the", "and", "for", "why", "was", "were", "does", "this", "that", "with", "how", "what"}
)
_MAX_QUERY_TOKENS = 8


@dataclass(frozen=True)
class NaturalKey:
    platform: str
    platform_id: str
    entity_type: str

    @classmethod
    def of(cls, entity: KnowledgeEntity) -> NaturalKey:
        return cls(entity.platform, entity.platform_id, entity.entity_type)


@dataclass
class SearchHit:
    entity: KnowledgeEntity
    score: float


@dataclass
class EntityHistory:
    entity: KnowledgeEntity
    revisions: list[KnowledgeEntityRevision]


@dataclass
class RelatedEntity:
    entity: KnowledgeEntity
    relationship_type: str
    direction: str  # "outgoing" | "incoming"


@dataclass
class FileContext:
    file_path: str
    entity: KnowledgeEntity | None = None
    history: list[KnowledgeEntityRevision] = field(default_factory=list)
    related: list[RelatedEntity] = field(default_factory=list)
    decisions: list[KnowledgeEntity] = field(default_factory=list)


@dataclass
class DecisionHistory:
    target: str
    decisions: list[KnowledgeEntity] = field(default_factory=list)


@dataclass
class TraversalStep:
    entity: KnowledgeEntity
    depth: int
    via: KnowledgeRelationship | None = None


def tokenize(query: str) -> list[str]:
    tokens: list[str] = []
    for token in _TOKEN_RE.findall(query.lower()):
        token = token.rstrip(".")
        if len(token) < 2 or token in _STOPWORDS or token in tokens:
            continue
        tokens.append(token)
    return tokens[:_MAX_QUERY_TOKENS]


class SimilarityRanker(Protocol):
    """Scores one candidate entity against the tokenized query."""

    def score(self, tokens: list[str], entity: KnowledgeEntity) -> float: ...


class LexicalRanker:
    """Token-overlap score in ``[0, 1]``; title hits weigh double."""

    def score(self, tokens: list[str], entity: KnowledgeEntity) -> float:
        if not tokens:
            return 0.0
        title = (entity.title or "").lower()
        body = f"{entity.content or ''} {entity.platform_id}".lower()
        total = 0.0
        for token in tokens:
            if token in title:
                total += 2.0
            if token in body:
                total += 1.0
        return total / (3.0 * len(tokens))


class KnowledgeGraphService:
    """Stateless service over the knowledge graph tables."""

    def __init__(
        self,
        entity_dao: KnowledgeEntityDAO,
        relationship_dao: KnowledgeRelationshipDAO,
        ranker: SimilarityRanker | None = None,
    ) -> None:
        self._entity_dao = entity_dao
        self._relationship_dao = relationship_dao
        self._ranker = ranker or LexicalRanker()

    # ── write ─────────────────────────────────────────────────────────────

    async def upsert_entity(
        self,
        session: AsyncSession,
        project_id: str,
        key: NaturalKey,
        *,
        title: str = "",
        content: str = "",
        participants: list[str] | None = None,
        attributes: dict[str, Any] | None = None,
        source_event_id: str | None = None,
        observed_at: datetime | None = None,
    ) -> KnowledgeEntity:
        """Create the entity or update it in place; never duplicates a key.

        Raises :class:`ValidationError` for an unknown entity type or an
        empty key.
        """
        if key.entity_type not in ENTITY_TYPES:
            raise ValidationError(f"unknown entity type: {key.entity_type!r}")
        if not project_id or not key.platform or not key.platform_id:
            raise ValidationError("project_id, platform and platform_id are required")
        return await self._entity_dao.upsert(
            session,
            project_id=project_id,
            entity_type=key.entity_type,
            platform=key.platform,
            platform_id=key.platform_id,
            title=title,
            content=content,
            participants=participants,
            attributes=attributes,
            source_event_id=source_event_id,
            observed_at=observed_at,
        )

    async def upsert_relationship(
        self,
        session: AsyncSession,
        project_id: str,
        source: NaturalKey | uuid.UUID,
        target: NaturalKey | uuid.UUID,
        relationship_type: str,
        *,
        strength: float = 1.0,
        attributes: dict[str, Any] | None = None,
    ) -> KnowledgeRelationship:
        """Create or refresh a directed edge between two existing entities.

        Raises :class:`ReferentialIntegrityError` (and writes nothing) when
        either endpoint is missing from *project_id*.
        """
        if relationship_type not in RELATIONSHIP_TYPES:
            raise ValidationError(f"unknown relationship type: {relationship_type!r}")
        source_entity = await self._resolve(session, project_id, source)
        if source_entity is None:
            raise ReferentialIntegrityError(f"source entity not found: {source}")
        target_entity = await self._resolve(session, project_id, target)
        if target_entity is None:
            raise ReferentialIntegrityError(f"target entity not found: {target}")
        return await self._relationship_dao.upsert(
            session,
            project_id=project_id,
            source_entity_id=source_entity.id,
            target_entity_id=target_entity.id,
            relationship_type=relationship_type,
            strength=strength,
            attributes=attributes,
        )

    # ── read ──────────────────────────────────────────────────────────────

    async def search_by_query(
        self,
        session: AsyncSession,
        project_id: str,
        query: str,
        top_k: int = 10,
        *,
        entity_types: list[str] | None = None,
    ) -> list[SearchHit]:
        """Top-K entities of *project_id* ranked by similarity to *query*."""
        if top_k <= 0:
            return []
        tokens = tokenize(query)
        candidates = await self._entity_dao.search_candidates(
            session, project_id, tokens, entity_types=entity_types
        )
        hits = [SearchHit(e, self._ranker.score(tokens, e)) for e in candidates]
        hits = [h for h in hits if h.score > 0]
        hits.sort(key=lambda h: (-h.score, -h.entity.updated_at.timestamp(), str(h.entity.id)))
        return hits[:top_k]

    async def get_entity_history(
        self, session: AsyncSession, project_id: str, key: NaturalKey
    ) -> EntityHistory:
        """Current entity plus every recorded revision, oldest first.

        Raises :class:`NotFoundError` if the key is unknown in *project_id*.
        """
        entity = await self._entity_dao.get_by_natural_key(
            session, project_id, key.platform, key.platform_id, key.entity_type
        )
        if entity is None:
            raise NotFoundError(f"entity not found: {key}")
        revisions = await self._entity_dao.list_revisions(session, entity.id)
        return EntityHistory(entity=entity, revisions=revisions)

    async def get_context_for_file(
        self, session: AsyncSession, project_id: str, file_path: str
    ) -> FileContext:
        """History, neighbours and decisions around one file.

        An unknown file yields an empty context rather than an error.
        """
        context = FileContext(file_path=file_path)
        entity = await self._entity_dao.get_by_natural_key(
            session, project_id, SHARED_PLATFORM, file_path, "file"
        )
        if entity is not None:
            context.entity = entity
            context.history = await self._entity_dao.list_revisions(session, entity.id)
            context.related = await self._neighbours(session, project_id, entity)

        decisions = {
            r.entity.id: r.entity for r in context.related if r.entity.entity_type == "decision"
        }
        for hit in await self.search_by_query(
            session, project_id, file_path, top_k=20, entity_types=["decision"]
        ):
            decisions.setdefault(hit.entity.id, hit.entity)
        context.decisions = _chronological(decisions.values())
        return context

    async def get_decision_history(
        self, session: AsyncSession, project_id: str, target: str
    ) -> DecisionHistory:
        """Decisions about *target* (a file path, feature name, or topic), oldest first."""
        decisions: dict[uuid.UUID, KnowledgeEntity] = {}
        for entity_type in ("file", "feature"):
            anchor = await self._entity_dao.get_by_natural_key(
                session, project_id, SHARED_PLATFORM, target, entity_type
            )
            if anchor is None:
                continue
            for related in await self._neighbours(session, project_id, anchor):
                if related.entity.entity_type == "decision":
                    decisions.setdefault(related.entity.id, related.entity)

        for hit in await self.search_by_query(
            session, project_id, target, top_k=50, entity_types=["decision"]
        ):
            decisions.setdefault(hit.entity.id, hit.entity)
        return DecisionHistory(target=target, decisions=_chronological(decisions.values()))

    async def traverse_relationships(
        self,
        session: AsyncSession,
        project_id: str,
        start_id: uuid.UUID,
        max_depth: int = 2,
        relationship_types: list[str] | None = None,
    ) -> list[TraversalStep]:
        """Breadth-first walk from *start_id*, following edges in both directions."""
        start = await self._entity_dao.get_in_project(session, project_id, start_id)
        if start is None:
            raise NotFoundError(f"entity not found: {start_id}")

        steps = [TraversalStep(entity=start, depth=0)]
        seen = {start.id}
        queue: deque[tuple[KnowledgeEntity, int]] = deque([(start, 0)])
        while queue:
            entity, depth = queue.popleft()
            if depth >= max_depth:
                continue
            edges = await self._relationship_dao.list_for_entity(
                session, entity.id, relationship_types=relationship_types
            )
            next_ids = []
            for edge in edges:
                other = (
                    edge.target_entity_id
                    if edge.source_entity_id == entity.id
                    else edge.source_entity_id
                )
                if other not in seen:
                    seen.add(other)
                    next_ids.append((other, edge))
            others = {
                e.id: e
                for e in await self._entity_dao.list_by_ids(
                    session, project_id, [i for i, _ in next_ids]
                )
            }
            for other_id, edge in next_ids:
                other_entity = others.get(other_id)
                if other_entity is None:
                    continue
                steps.append(TraversalStep(entity=other_entity, depth=depth + 1, via=edge))
                queue.append((other_entity, depth + 1))
        return steps

    async def get_recent_architecture_discussions(
        self,
        session: AsyncSession,
        project_id: str,
        since: datetime | None = None,
        limit: int = 20,
    ) -> list[KnowledgeEntity]:
        """Discussions and decisions mentioning architecture keywords, newest first."""
        candidates = await self._entity_dao.search_candidates(
            session,
            project_id,
            list(ARCHITECTURE_KEYWORDS),
            entity_types=["discussion", "decision"],
            since=since,
            limit=limit * 5,
        )
        candidates.sort(key=lambda e: e.observed_at or e.updated_at, reverse=True)
        return candidates[:limit]

    async def count_entities(
        self, session: AsyncSession, project_id: str, entity_type: str | None = None
    ) -> int:
        return await self._entity_dao.count_by_project(session, project_id, entity_type)

    async def count_relationships(self, session: AsyncSession, project_id: str) -> int:
        return await self._relationship_dao.count_by_project(session, project_id)

    # ── internal ──────────────────────────────────────────────────────────

    async def _resolve(
        self, session: AsyncSession, project_id: str, ref: NaturalKey | uuid.UUID
    ) -> KnowledgeEntity | None:
        if isinstance(ref, uuid.UUID):
            return await self._entity_dao.get_in_project(session, project_id, ref)
        return await self._entity_dao.get_by_natural_key(
            session, project_id, ref.platform, ref.platform_id, ref.entity_type
        )

    async def _neighbours(
        self, session: AsyncSession, project_id: str, entity: KnowledgeEntity
    ) -> list[RelatedEntity]:
        edges = await self._relationship_dao.list_for_entity(session, entity.id)
        other_ids = [
            e.target_entity_id if e.source_entity_id == entity.id else e.source_entity_id
            for e in edges
        ]
        others = {
            e.id: e for e in await self._entity_dao.list_by_ids(session, project_id, other_ids)
        }
        related = []
        for edge, other_id in zip(edges, other_ids):
            other = others.get(other_id)
            if other is None:
                continue
            direction = "outgoing" if edge.source_entity_id == entity.id else "incoming"
            related.append(RelatedEntity(other, edge.relationship_type, direction))
        return related


def _chronological(entities: Any) -> list[KnowledgeEntity]:
    return sorted(entities, key=lambda e: (e.observed_at or e.created_at, str(e.id)))
