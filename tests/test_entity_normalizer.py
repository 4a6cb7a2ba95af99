"""Tests for duplicate entity detection and merging."""

import pytest
from unittest.mock import AsyncMock
from sqlalchemy import select

from knowledge_graph.core.exceptions import APIClientError
from knowledge_graph.core.unified_llm import ComposeResult
from knowledge_graph.database.models import WorkspaceEntity
from knowledge_graph.schemas.enums import EntityType
from knowledge_graph.schemas.knowledge import EntityResponse
from knowledge_graph.services.knowledge.entity_normalizer import (
    ALIAS_MATCH_BOOST,
    EntityNormalizer,
    combined_similarity,
    extract_keywords,
    jaccard_similarity,
    levenshtein_similarity,
    parse_ai_normalization_response,
)

WORKSPACE_ID = "ws-test"


def _response(name: str, entity_id: str = "ent-1", aliases=None, doc_count: int = 1) -> EntityResponse:
    return EntityResponse(
        id=entity_id,
        workspace_id=WORKSPACE_ID,
        entity_type="organization",
        name=name,
        normalized_name=name.lower(),
        aliases=aliases or [],
        mention_count=doc_count,
        doc_count=doc_count,
    )


def _reply(text: str) -> AsyncMock:
    return AsyncMock(return_value=ComposeResult(text=text, provider="dev", model="dev"))


class TestStringSimilarity:
    """Pre-filter scoring."""

    def test_levenshtein(self):
        assert levenshtein_similarity("acme", "acme") == 1.0
        assert levenshtein_similarity("acme corp", "acme corps") == pytest.approx(0.9)
        assert levenshtein_similarity("ab", "abc") == 0.0

    def test_keywords_drop_stopwords_and_short_words(self):
        assert extract_keywords("The Bank of Acme, Holdings-Group") == {"bank", "acme", "holdings", "group"}

    def test_jaccard_ignores_word_order(self):
        a = extract_keywords("Acme Holdings Group")
        b = extract_keywords("Holdings Group of Acme")
        assert jaccard_similarity(a, b) == 1.0
        assert jaccard_similarity(set(), set()) == 0.0

    def test_alias_overlap_boost(self):
        ibm_long = _response("International Business Machines", "ent-1", aliases=["IBM"])
        ibm = _response("IBM", "ent-2")

        assert combined_similarity(ibm_long, ibm) == ALIAS_MATCH_BOOST

    def test_unrelated_names_score_low(self):
        assert combined_similarity(_response("Acme Corp", "ent-1"), _response("Zenith Labs", "ent-2")) < 0.3


class TestResponseParsing:
    """Parsing of ``N: SCORE - CANONICAL_NAME - REASON`` lines."""

    def test_valid_lines(self):
        response = (
            "1: 95 - Acme Corporation - Same company, formal name\n"
            "2: 40 – Globex – Different divisions"
        )

        parsed = parse_ai_normalization_response(response, 2)

        assert parsed[1].score == 95
        assert parsed[1].canonical_name == "Acme Corporation"
        assert parsed[1].reason == "Same company, formal name"
        assert parsed[2].score == 40
        assert parsed[2].canonical_name == "Globex"

    def test_out_of_range_and_noise_are_ignored(self):
        response = (
            "Here are my answers:\n"
            "3: 90 - Acme - index beyond batch\n"
            "1: 101 - Acme - score beyond range\n"
            "2: 85 - Globex Inc - Abbreviation"
        )

        parsed = parse_ai_normalization_response(response, 2)

        assert list(parsed) == [2]
        assert parsed[2].canonical_name == "Globex Inc"


class TestDuplicateCandidates:
    """Candidate discovery from stored entities."""

    @pytest.mark.asyncio
    async def test_same_type_and_prefix_block(self, db_session, kg_config, mock_llm_client, make_entity):
        corp = await make_entity("Acme Corp")
        corporation = await make_entity("Acme Corporation")
        await make_entity("Acme Corp", entity_type=EntityType.PERSON)
        await make_entity("Zenith Acme Corp")

        candidates = await EntityNormalizer(db_session, mock_llm_client, kg_config).find_duplicate_candidates(
            WORKSPACE_ID
        )

        assert len(candidates) == 1
        assert {candidates[0].entity_a.id, candidates[0].entity_b.id} == {corp.id, corporation.id}
        assert candidates[0].string_similarity == pytest.approx(1 - 7 / 16)

    @pytest.mark.asyncio
    async def test_entity_type_filter(self, db_session, kg_config, mock_llm_client, make_entity):
        await make_entity("Acme Corp")
        await make_entity("Acme Corporation")

        candidates = await EntityNormalizer(db_session, mock_llm_client, kg_config).find_duplicate_candidates(
            WORKSPACE_ID, EntityType.PERSON
        )

        assert candidates == []

    @pytest.mark.asyncio
    async def test_prompt_lists_names_aliases_and_context(
        self, db_session, kg_config, mock_llm_client, make_entity, add_doc_mentions
    ):
        corp = await make_entity("Acme Corp", aliases=["ACME"])
        corporation = await make_entity("Acme Corporation")
        await add_doc_mentions({"doc-1": [corp, corporation]})
        normalizer = EntityNormalizer(db_session, mock_llm_client, kg_config)

        candidates = await normalizer.find_duplicate_candidates(WORKSPACE_ID)
        prompt = await normalizer.build_prompt(candidates)

        assert prompt.startswith("Determine if each pair refers to the same entity:")
        assert "PAIR 1 (organization):" in prompt
        assert '"Acme Corp" (aliases: ACME)' in prompt
        assert "Acme Corporation in doc-1" in prompt


class TestNormalizeWorkspace:
    """End-to-end normalization passes."""

    async def _seed(self, make_entity, add_doc_mentions):
        corp = await make_entity("Acme Corp")
        corporation = await make_entity("Acme Corporation")
        globex = await make_entity("Globex Inc")
        globex_long = await make_entity("Globex Incorporated")
        await add_doc_mentions({"doc-1": [corp], "doc-2": [corp], "doc-3": [corporation], "doc-4": [globex]})
        return corp.id, corporation.id, globex.id, globex_long.id

    @pytest.mark.asyncio
    async def test_auto_merge_threshold(self, db_session, kg_config, mock_llm_client, make_entity, add_doc_mentions):
        corp_id, corporation_id, globex_id, globex_long_id = await self._seed(make_entity, add_doc_mentions)
        mock_llm_client.compose_text = _reply(
            "1: 95 - Acme Corporation - Same company, formal name\n"
            "2: 70 - Globex Inc - Probably the same company"
        )

        result = await EntityNormalizer(db_session, mock_llm_client, kg_config).normalize_workspace_entities(
            WORKSPACE_ID
        )

        assert result.errors == []
        assert result.candidates_found == 2
        assert result.ai_compared == 2
        assert result.auto_merged == 1
        assert result.suggestions_generated == 2
        assert len(result.suggestions) == 1
        remaining = result.suggestions[0]
        assert remaining.confidence == 70
        assert remaining.auto_merge is False
        assert {remaining.entity_a.id, remaining.entity_b.id} == {globex_id, globex_long_id}

        db_session.expire_all()
        rows = (
            await db_session.execute(select(WorkspaceEntity).where(WorkspaceEntity.normalized_name.like("acme%")))
        ).scalars().all()
        assert [(r.id, r.name, r.aliases, r.doc_count) for r in rows] == [
            (corp_id, "Acme Corporation", ["Acme Corp"], 3)
        ]

    @pytest.mark.asyncio
    async def test_suggestions_only(self, db_session, kg_config, mock_llm_client, make_entity, add_doc_mentions):
        await self._seed(make_entity, add_doc_mentions)
        mock_llm_client.compose_text = _reply(
            "1: 95 - Acme Corporation - Same company\n2: 30 - Globex Inc - Unclear"
        )

        result = await EntityNormalizer(db_session, mock_llm_client, kg_config).normalize_workspace_entities(
            WORKSPACE_ID, auto_merge=False
        )

        assert result.auto_merged == 0
        assert [(s.confidence, s.auto_merge) for s in result.suggestions] == [(95, True)]
        assert result.suggestions_generated == 1
        total = (await db_session.execute(select(WorkspaceEntity))).scalars().all()
        assert len(total) == 4

    @pytest.mark.asyncio
    async def test_ai_failure_falls_back_to_string_similarity(
        self, db_session, kg_config, mock_llm_client, make_entity, add_doc_mentions
    ):
        await self._seed(make_entity, add_doc_mentions)
        mock_llm_client.compose_text = AsyncMock(side_effect=APIClientError("down"))

        result = await EntityNormalizer(db_session, mock_llm_client, kg_config).normalize_workspace_entities(
            WORKSPACE_ID
        )

        assert result.errors == ["AI batch scoring failed: down"]
        assert result.ai_compared == 0
        assert result.auto_merged == 0
        assert [(s.recommended_name, s.confidence, s.auto_merge) for s in result.suggestions] == [
            ("Acme Corp", 56, False),
            ("Globex Inc", 53, False),
        ]

    @pytest.mark.asyncio
    async def test_failed_auto_merge_becomes_suggestion(
        self, db_session, kg_config, mock_llm_client, make_entity, add_doc_mentions
    ):
        corp = await make_entity("Acme Corp")
        corporation = await make_entity("Acme Corporation")
        await make_entity("Beta Labs")
        await add_doc_mentions({"doc-1": [corp]})
        mock_llm_client.compose_text = _reply("1: 92 - Beta Labs - Renamed")

        result = await EntityNormalizer(db_session, mock_llm_client, kg_config).normalize_workspace_entities(
            WORKSPACE_ID
        )

        assert result.auto_merged == 0
        assert result.errors == ['Auto-merge failed for "Acme Corp" + "Acme Corporation"']
        assert [(s.confidence, s.auto_merge) for s in result.suggestions] == [(92, False)]
        entities = (await db_session.execute(select(WorkspaceEntity.id))).scalars().all()
        assert corporation.id in entities

    @pytest.mark.asyncio
    async def test_empty_workspace(self, db_session, kg_config, mock_llm_client):
        result = await EntityNormalizer(db_session, mock_llm_client, kg_config).normalize_workspace_entities(
            WORKSPACE_ID
        )

        assert result.candidates_found == 0
        assert result.suggestions == []
        mock_llm_client.compose_text.assert_not_awaited()
