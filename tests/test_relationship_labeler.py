"""Tests for strength scoring, response parsing and AI labeling."""

import asyncio

import pytest
from unittest.mock import AsyncMock, Mock

from knowledge_graph.core.config import KnowledgeGraphSettings
from knowledge_graph.core.exceptions import RelationshipLimitExceededError
from knowledge_graph.core.unified_llm import ComposeResult, UnifiedLLMClient
from knowledge_graph.repositories.entity_relationship_repository import EntityRelationshipRepository
from knowledge_graph.schemas.enums import RelationshipType
from knowledge_graph.schemas.knowledge import CoOccurrencePair, DetectionResult
from knowledge_graph.services.knowledge.evidence import EvidenceGatherer, calculate_base_strength
from knowledge_graph.services.knowledge.relationship_labeler import (
    SYSTEM_PROMPT,
    RelationshipLabeler,
    blend_strength,
    parse_ai_relationship_response,
)

WORKSPACE_ID = "ws-test"


def _pair(index: int = 1, shared_doc_count: int = 3) -> CoOccurrencePair:
    return CoOccurrencePair(
        entity_a_id=f"a{index}",
        entity_a_name=f"Acme {index}",
        entity_a_type="organization",
        entity_a_aliases=["ACME", "Acme Inc", "Acme LLC", "Acme Ltd"],
        entity_b_id=f"b{index}",
        entity_b_name=f"Jane {index}",
        entity_b_type="person",
        shared_doc_ids=[f"doc-{i}" for i in range(shared_doc_count)],
        shared_doc_count=shared_doc_count,
    )


class TestBaseStrength:
    """Deterministic strength from shared document count."""

    def test_endpoints(self):
        assert calculate_base_strength(1) == pytest.approx(0.1)
        assert calculate_base_strength(10) == pytest.approx(1.0)

    def test_monotonic_and_saturating(self):
        values = [calculate_base_strength(n) for n in range(1, 15)]
        assert values == sorted(values)
        assert all(value == pytest.approx(1.0) for value in values[9:])

    def test_blend(self):
        assert blend_strength(0.5, 90) == pytest.approx(0.5 * 0.4 + 0.9 * 0.6)


class TestParseAiRelationshipResponse:
    """Fixed-format response parsing."""

    def test_single_line(self):
        parsed = parse_ai_relationship_response(
            "1: contractual - contracted with - 92 - both are named in the agreement", 1
        )

        assert list(parsed) == [1]
        assert parsed[1].relationship_type == RelationshipType.CONTRACTUAL
        assert parsed[1].label == "contracted with"
        assert parsed[1].confidence == 92
        assert parsed[1].reason == "both are named in the agreement"

    def test_missing_confidence_is_ignored(self):
        assert parse_ai_relationship_response("1: contractual - contracted with - both named", 1) == {}

    def test_en_and_em_dashes(self):
        response = "1: financial – pays – 80 – invoice lines\n2: temporal — precedes — 70 — dated earlier"
        parsed = parse_ai_relationship_response(response, 2)

        assert parsed[1].label == "pays"
        assert parsed[2].relationship_type == RelationshipType.TEMPORAL

    def test_out_of_range_values_are_ignored(self):
        response = "\n".join([
            "0: financial - pays - 80 - zero index",
            "3: financial - pays - 80 - beyond batch",
            "2: financial - pays - 180 - bad confidence",
        ])
        assert parse_ai_relationship_response(response, 2) == {}

    def test_unknown_type_becomes_custom(self):
        parsed = parse_ai_relationship_response("1: mentoring - mentors - 75 - senior partner", 1)
        assert parsed[1].relationship_type == RelationshipType.CUSTOM

    def test_chatter_around_lines(self):
        response = "Here is my analysis:\n\n  1: organizational - reports to - 88 - org chart\n\nThanks!"
        parsed = parse_ai_relationship_response(response, 1)
        assert parsed[1].label == "reports to"


@pytest.fixture
def mock_relationship_repository() -> AsyncMock:
    repo = AsyncMock(spec=EntityRelationshipRepository)
    repo.session = AsyncMock()
    repo.get_by_pair.return_value = None
    repo.create_if_absent.return_value = Mock(id="rel-1")
    return repo


@pytest.fixture
def mock_evidence_gatherer() -> AsyncMock:
    gatherer = AsyncMock(spec=EvidenceGatherer)
    gatherer.gather.return_value = [{"doc_id": "doc-0", "context": "Acme hired Jane"}]
    return gatherer


def _llm_returning(text: str) -> Mock:
    client = Mock(spec=UnifiedLLMClient)
    client.compose_text = AsyncMock(return_value=ComposeResult(text=text, provider="openrouter", model="m"))
    return client


def _labeler(repo, gatherer, llm_client, **config) -> RelationshipLabeler:
    return RelationshipLabeler(repo, gatherer, llm_client, KnowledgeGraphSettings(**config))


class TestRelationshipLabeler:
    """Batching, acceptance rules and failure handling."""

    @pytest.mark.asyncio
    async def test_weak_co_occurrence_verdict_is_not_applied(
        self, mock_relationship_repository, mock_evidence_gatherer
    ):
        llm_client = _llm_returning("1: co_occurrence - appears with - 30 - coincidence")
        labeler = _labeler(mock_relationship_repository, mock_evidence_gatherer, llm_client)
        result = DetectionResult()

        await labeler.label_relationships([_pair()], WORKSPACE_ID, result)

        mock_relationship_repository.update.assert_not_called()
        mock_relationship_repository.create_if_absent.assert_not_called()
        assert result.ai_labeled == 0
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_new_typed_relationship_is_created(self, mock_relationship_repository, mock_evidence_gatherer):
        llm_client = _llm_returning("1: organizational - employs - 90 - Jane is Acme's CFO")
        labeler = _labeler(mock_relationship_repository, mock_evidence_gatherer, llm_client)
        result = DetectionResult()

        await labeler.label_relationships([_pair(shared_doc_count=10)], WORKSPACE_ID, result)

        mock_relationship_repository.get_by_pair.assert_awaited_once_with("a1", "b1", RelationshipType.ORGANIZATIONAL)
        args = mock_relationship_repository.create_if_absent.await_args
        assert args.args == (WORKSPACE_ID, "a1", "b1", RelationshipType.ORGANIZATIONAL)
        assert args.kwargs["label"] == "employs"
        assert args.kwargs["strength"] == pytest.approx(1.0 * 0.4 + 0.9 * 0.6)
        assert result.ai_labeled == 1
        assert result.relationships_created == 1

    @pytest.mark.asyncio
    async def test_existing_typed_relationship_is_updated(
        self, mock_relationship_repository, mock_evidence_gatherer
    ):
        mock_relationship_repository.get_by_pair.return_value = Mock(id="rel-9")
        llm_client = _llm_returning("1: co_occurrence - often together - 75 - shared deals")
        labeler = _labeler(mock_relationship_repository, mock_evidence_gatherer, llm_client)
        result = DetectionResult()

        await labeler.label_relationships([_pair()], WORKSPACE_ID, result)

        mock_relationship_repository.update.assert_awaited_once()
        assert mock_relationship_repository.update.await_args.args == ("rel-9",)
        assert mock_relationship_repository.update.await_args.kwargs["label"] == "often together"
        assert result.relationships_updated == 1

    @pytest.mark.asyncio
    async def test_pairs_below_doc_threshold_are_not_sent(
        self, mock_relationship_repository, mock_evidence_gatherer
    ):
        llm_client = _llm_returning("")
        labeler = _labeler(mock_relationship_repository, mock_evidence_gatherer, llm_client)

        await labeler.label_relationships([_pair(shared_doc_count=1)], WORKSPACE_ID, DetectionResult())

        llm_client.compose_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_batches_respect_max_size(self, mock_relationship_repository, mock_evidence_gatherer):
        llm_client = _llm_returning("")
        labeler = _labeler(mock_relationship_repository, mock_evidence_gatherer, llm_client, max_ai_batch=2)

        await labeler.label_relationships([_pair(i) for i in range(1, 6)], WORKSPACE_ID, DetectionResult())

        assert llm_client.compose_text.await_count == 3
        kwargs = llm_client.compose_text.await_args.kwargs
        assert kwargs["system_prompt"] == SYSTEM_PROMPT
        assert kwargs["max_tokens"] == 500

    @pytest.mark.asyncio
    async def test_timeout_is_recorded_and_next_batch_runs(
        self, mock_relationship_repository, mock_evidence_gatherer
    ):
        calls = []

        async def slow_then_fast(prompt, system_prompt=None, max_tokens=None):
            calls.append(prompt)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return ComposeResult(text="1: financial - pays - 80 - invoices", provider="openrouter", model="m")

        llm_client = Mock(spec=UnifiedLLMClient)
        llm_client.compose_text = slow_then_fast
        labeler = _labeler(
            mock_relationship_repository,
            mock_evidence_gatherer,
            llm_client,
            max_ai_batch=1,
            detector_timeout_seconds=0.05,
        )
        result = DetectionResult()

        await labeler.label_relationships([_pair(1), _pair(2)], WORKSPACE_ID, result)

        assert result.errors == ["AI batch labeling failed: Relationship detection AI timed out after 0.05s"]
        assert result.ai_labeled == 1
        mock_relationship_repository.create_if_absent.assert_awaited_once()
        mock_relationship_repository.session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_provider_error_is_recorded(self, mock_relationship_repository, mock_evidence_gatherer):
        llm_client = Mock(spec=UnifiedLLMClient)
        llm_client.compose_text = AsyncMock(side_effect=RuntimeError("upstream 502"))
        labeler = _labeler(mock_relationship_repository, mock_evidence_gatherer, llm_client)
        result = DetectionResult()

        await labeler.label_relationships([_pair()], WORKSPACE_ID, result)

        assert result.errors == ["AI batch labeling failed: upstream 502"]

    @pytest.mark.asyncio
    async def test_quota_error_propagates(self, mock_relationship_repository, mock_evidence_gatherer):
        mock_relationship_repository.create_if_absent.side_effect = RelationshipLimitExceededError(
            WORKSPACE_ID, 5000, 5000
        )
        llm_client = _llm_returning("1: contractual - contracted with - 92 - agreement")
        labeler = _labeler(mock_relationship_repository, mock_evidence_gatherer, llm_client)

        with pytest.raises(RelationshipLimitExceededError):
            await labeler.label_relationships([_pair()], WORKSPACE_ID, DetectionResult())

    @pytest.mark.asyncio
    async def test_prompt_lists_pairs_with_aliases_and_evidence(
        self, mock_relationship_repository, mock_evidence_gatherer
    ):
        labeler = _labeler(mock_relationship_repository, mock_evidence_gatherer, _llm_returning(""))

        prompt = await labeler.build_prompt([_pair(1), _pair(2)])

        assert "PAIR 1:" in prompt
        assert "PAIR 2:" in prompt
        assert 'Entity A: "Acme 1" (organization) [aliases: ACME, Acme Inc, Acme LLC]' in prompt
        assert "Acme Ltd" not in prompt
        assert "Shared documents: 3" in prompt
        assert "    - Acme hired Jane" in prompt
