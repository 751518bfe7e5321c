"""Tests for the context processors (rule-based and HTTP)."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pydantic
import pytest

from contextkeeper.connectors.models import EventType, NormalizedEvent
from contextkeeper.engines.context_processor import (
    ContextProcessor,
    EntityKey,
    ExtractionResult,
    HttpContextProcessor,
    RelationshipDraft,
    RuleBasedContextProcessor,
    create_context_processor,
)
from contextkeeper.engines.context_processor.rules import (
    contains_decision,
    decision_title,
    extract,
    extract_alternatives,
    extract_change_reason,
    extract_consequences,
    extract_rationale,
    infer_feature_status,
)

T0 = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


def _commit(**overrides) -> NormalizedEvent:
    fields = {
        "platform_id": "commit-abc",
        "event_type": EventType.COMMIT,
        "timestamp": T0,
        "author": "carol",
        "title": "Switch cache to Redis",
        "content": "We decided to use Redis because it is fast. Alternatives: memcached",
        "platform": "github",
        "file_refs": ["cache/redis.go"],
        "feature_refs": ["cache"],
    }
    fields.update(overrides)
    return NormalizedEvent(**fields)


def _edges(result: ExtractionResult) -> set[tuple[str, str, str]]:
    return {
        (r.source.platform_id, r.relationship_type, r.target.platform_id)
        for r in result.relationships
    }


# ── heuristics ────────────────────────────────────────────────────────────


class TestHeuristics:
    def test_contains_decision(self):
        assert contains_decision("After review we AGREED on Postgres")
        assert contains_decision("Let's use httpx")
        assert not contains_decision("deploy done")

    def test_decision_title(self):
        assert decision_title("Use Redis. More detail here.") == "Use Redis"
        assert decision_title("") == "Decision"
        long = "x" * 150
        title = decision_title(long)
        assert len(title) == 100
        assert title.endswith("...")

    def test_rationale(self):
        assert extract_rationale("Use Redis because it is fast. Also cheap.") == (
            "because it is fast"
        )
        assert extract_rationale("Use Redis.") == ""

    def test_alternatives_and_consequences(self):
        text = "Going with Kafka.\nAlternatives: RabbitMQ\nImpact: new ops runbook"
        assert extract_alternatives(text) == ["RabbitMQ"]
        assert extract_consequences(text) == ["new ops runbook"]

    def test_change_reason(self):
        assert extract_change_reason("Changed because: the old API was removed") == (
            "the old API was removed"
        )
        assert extract_change_reason("Bump deps. Nothing else") == "Bump deps"
        assert extract_change_reason("") == "File modification discussed"

    @pytest.mark.parametrize(
        "text, status",
        [
            ("Export is done", "completed"),
            ("working on export", "in_progress"),
            ("we will add export", "planned"),
            ("export", "in_progress"),
        ],
    )
    def test_feature_status(self, text, status):
        assert infer_feature_status(text) == status


# ── extract ───────────────────────────────────────────────────────────────


class TestExtract:
    def test_commit_with_decision(self):
        result = extract(_commit())

        kinds = sorted(e.entity_type for e in result.entities)
        assert kinds == ["contributor", "decision", "discussion", "feature", "file"]
        assert _edges(result) == {
            ("commit-abc", "introduced_by", "carol"),
            ("cache/redis.go", "discussed_in", "commit-abc"),
            ("cache/redis.go", "modified_by", "carol"),
            ("cache", "discussed_in", "commit-abc"),
            ("cache", "introduced_by", "carol"),
            ("cache", "relates_to", "cache/redis.go"),
            ("decision-commit-abc", "discussed_in", "commit-abc"),
            ("decision-commit-abc", "introduced_by", "carol"),
            ("decision-commit-abc", "relates_to", "cache/redis.go"),
            ("decision-commit-abc", "relates_to", "cache"),
        }

    def test_decision_attributes(self):
        result = extract(_commit())
        [decision] = [e for e in result.entities if e.entity_type == "decision"]

        assert decision.platform == "github"
        assert decision.title == "We decided to use Redis because it is fast"
        assert decision.participants == ["carol"]
        assert decision.attributes["status"] == "active"
        assert decision.attributes["rationale"] == "because it is fast"
        assert decision.attributes["alternatives"] == ["memcached"]
        assert decision.attributes["source_event_id"] == "commit-abc"
        assert decision.attributes["decided_at"] == T0.isoformat()

    def test_shared_nodes_use_project_platform(self):
        result = extract(_commit())
        shared = {e.platform for e in result.entities if e.entity_type in ("file", "feature")}
        assert shared == {"project"}

    def test_mentioned_file_links_at_full_strength(self):
        result = extract(_commit(content="We decided to rewrite redis.go from scratch"))
        [edge] = [
            r
            for r in result.relationships
            if r.source.entity_type == "decision" and r.target.entity_type == "file"
        ]
        assert edge.strength == 1.0

    def test_unmentioned_file_links_weaker(self):
        result = extract(_commit())
        [edge] = [
            r
            for r in result.relationships
            if r.source.entity_type == "decision" and r.target.entity_type == "file"
        ]
        assert edge.strength == 0.6

    def test_chat_reply_without_decision(self):
        event = NormalizedEvent(
            platform_id="msg-C1-2.0",
            event_type=EventType.MESSAGE,
            timestamp=T0,
            author="U2",
            content="deploy done, see config.yaml",
            platform="slack",
            thread_id="1.0",
            parent_id="msg-C1-1.0",
            file_refs=["config.yaml"],
            metadata={"channel_id": "C1"},
        )
        result = extract(event)

        assert sorted(e.entity_type for e in result.entities) == [
            "contributor",
            "discussion",
            "file",
        ]
        assert _edges(result) == {
            ("msg-C1-2.0", "introduced_by", "U2"),
            ("msg-C1-2.0", "relates_to", "msg-C1-1.0"),
            ("config.yaml", "discussed_in", "msg-C1-2.0"),
        }
        [discussion] = [e for e in result.entities if e.entity_type == "discussion"]
        assert discussion.title == "deploy done, see config"
        assert discussion.attributes["channel_id"] == "C1"
        assert discussion.attributes["parent_id"] == "msg-C1-1.0"
        [file] = [e for e in result.entities if e.entity_type == "file"]
        assert "last_change_reason" not in file.attributes

    def test_no_author(self):
        result = extract(_commit(author="", content="plain", title=""))
        assert [e.entity_type for e in result.entities] == ["discussion", "file", "feature"]

    def test_every_edge_endpoint_is_drafted_or_parent(self):
        event = _commit(parent_id=None)
        result = extract(event)
        keys = {e.key for e in result.entities}
        for rel in result.relationships:
            assert rel.source in keys
            assert rel.target in keys

    @pytest.mark.asyncio
    async def test_rule_based_processor(self):
        processor = RuleBasedContextProcessor()
        assert isinstance(processor, ContextProcessor)
        result = await processor.process("proj", _commit())
        assert result == extract(_commit())


# ── contract models ───────────────────────────────────────────────────────


class TestContract:
    def test_strength_bounds(self):
        key = EntityKey(platform="github", platform_id="x", entity_type="file")
        with pytest.raises(pydantic.ValidationError):
            RelationshipDraft(source=key, target=key, relationship_type="relates_to", strength=2)

    def test_unknown_entity_type(self):
        with pytest.raises(pydantic.ValidationError):
            EntityKey(platform="github", platform_id="x", entity_type="ticket")

    def test_result_from_json(self):
        result = ExtractionResult.model_validate(
            {
                "entities": [
                    {"entity_type": "file", "platform": "project", "platform_id": "a.py"}
                ],
                "relationships": [],
            }
        )
        assert result.entities[0].key.platform_id == "a.py"


# ── HttpContextProcessor ──────────────────────────────────────────────────


class TestHttpContextProcessor:
    @pytest.mark.asyncio
    async def test_posts_event_and_parses_reply(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "entities": [
                        {
                            "entity_type": "discussion",
                            "platform": "github",
                            "platform_id": "commit-abc",
                            "title": "Switch",
                        }
                    ],
                    "relationships": [],
                },
            )

        async with HttpContextProcessor(
            "http://processor.local/extract", transport=httpx.MockTransport(handler)
        ) as processor:
            result = await processor.process("proj-a", _commit())

        assert [e.platform_id for e in result.entities] == ["commit-abc"]
        body = seen[0]
        assert body["project_id"] == "proj-a"
        assert body["event"]["platform_id"] == "commit-abc"
        assert body["event"]["event_type"] == "commit"
        assert body["event"]["file_refs"] == ["cache/redis.go"]
        assert body["event"]["timestamp"].startswith("2024-05-01T09:30:00")

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        def handler(request):
            return httpx.Response(503)

        async with HttpContextProcessor(
            "http://processor.local/extract", transport=httpx.MockTransport(handler)
        ) as processor:
            with pytest.raises(httpx.HTTPStatusError):
                await processor.process("proj-a", _commit())

    @pytest.mark.asyncio
    async def test_invalid_reply_rejected(self):
        def handler(request):
            return httpx.Response(200, json={"entities": [{"entity_type": "bogus"}]})

        async with HttpContextProcessor(
            "http://processor.local/extract", transport=httpx.MockTransport(handler)
        ) as processor:
            with pytest.raises(pydantic.ValidationError):
                await processor.process("proj-a", _commit())


# ── factory ───────────────────────────────────────────────────────────────


class TestFactory:
    def test_default_is_rule_based(self, monkeypatch):
        monkeypatch.delenv("CONTEXTKEEPER_CONTEXT_PROCESSOR_URL", raising=False)
        assert isinstance(create_context_processor(), RuleBasedContextProcessor)

    @pytest.mark.asyncio
    async def test_url_selects_http(self, monkeypatch):
        monkeypatch.setenv("CONTEXTKEEPER_CONTEXT_PROCESSOR_URL", "http://p.local/x")
        processor = create_context_processor()
        assert isinstance(processor, HttpContextProcessor)
        assert isinstance(processor, ContextProcessor)
        await processor.close()
