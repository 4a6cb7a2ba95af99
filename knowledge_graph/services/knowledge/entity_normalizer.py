"""Duplicate entity detection and merging.

A pass has two stages. A cheap string-similarity pre-filter (Levenshtein on
normalized names, keyword Jaccard, alias overlap) finds candidate pairs of
the same type, blocked by name prefix. The candidates are then scored by the
compose-text client in batches. Pairs scored at or above
``AUTO_MERGE_THRESHOLD`` are merged; those at or above ``SUGGEST_THRESHOLD``
are returned as suggestions.
"""

import re
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from rapidfuzz.distance import Levenshtein
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.core.config import KnowledgeGraphSettings, settings
from knowledge_graph.core.exceptions import ValidationError
from knowledge_graph.core.unified_llm import UnifiedLLMClient
from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.repositories.entity_repository import EntityRepository
from knowledge_graph.schemas.enums import EntityType
from knowledge_graph.schemas.knowledge import (
    AiNormalizationResult,
    DuplicateCandidate,
    EntityResponse,
    NormalizationResult,
    NormalizationSuggestion,
)
from knowledge_graph.utils.logging import get_logger
from knowledge_graph.utils.normalization import normalize_name
from knowledge_graph.utils.timeout import with_timeout

LOGGER = get_logger(__name__)

MIN_STRING_SIMILARITY = 0.3
AUTO_MERGE_THRESHOLD = 90
SUGGEST_THRESHOLD = 50
MAX_AI_TOKENS = 400
MIN_NAME_LENGTH = 3
BLOCK_PREFIX_LEN = 3
ALIAS_MATCH_BOOST = 0.85
PROMPT_CONTEXTS = 2
MIN_KEYWORD_LENGTH = 3

STOPWORDS = frozenset({
    "the", "and", "for", "with", "from", "that", "this", "are", "was", "were",
    "been", "have", "has", "had", "not", "but", "its", "into", "per", "all",
    "any", "our", "your", "their", "which", "who", "whom", "will", "shall",
})

SYSTEM_PROMPT = (
    "You are an entity deduplication expert for a document management system. "
    "For each numbered PAIR below, determine if the two names refer to the same real-world entity. "
    "Consider abbreviations, alternative spellings, and formal vs informal names. "
    "Output EXACTLY one line per pair in this format: N: SCORE - CANONICAL_NAME - REASON\n"
    "Where N is the pair number, SCORE is 0-100 confidence they are the same entity, "
    "CANONICAL_NAME is the preferred/formal name to keep, and REASON is a brief explanation.\n"
    "Example: 1: 95 - Acme Corporation - Both refer to the same company; formal name preferred"
)

RESPONSE_LINE = re.compile(r"^(\d+)\s*:\s*(\d+)\s*[-–—]\s*(.+?)\s*[-–—]\s*(.+)")

FALLBACK_REASON = "Matched by string similarity (AI unavailable)"


def levenshtein_similarity(a: str, b: str) -> float:
    """``1 - distance / max(len)``; 0 when either name is too short to compare."""
    if a == b:
        return 1.0
    if len(a) < MIN_NAME_LENGTH or len(b) < MIN_NAME_LENGTH:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def extract_keywords(text: str) -> Set[str]:
    words = re.split(r"[^a-z0-9]+", text.lower())
    return {w for w in words if len(w) >= MIN_KEYWORD_LENGTH and w not in STOPWORDS}


def jaccard_similarity(a: Set[str], b: Set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def has_alias_overlap(a: EntityResponse, b: EntityResponse) -> bool:
    names_a = {a.normalized_name} | {normalize_name(alias) for alias in a.aliases}
    names_b = {b.normalized_name} | {normalize_name(alias) for alias in b.aliases}
    return bool(names_a & names_b)


def combined_similarity(a: EntityResponse, b: EntityResponse) -> float:
    """Best of name edit similarity, keyword overlap and alias overlap."""
    name_a = a.normalized_name
    name_b = b.normalized_name
    if name_a == name_b:
        return 1.0

    edit_similarity = levenshtein_similarity(name_a, name_b)
    keyword_similarity = jaccard_similarity(extract_keywords(a.name), extract_keywords(b.name))
    alias_boost = ALIAS_MATCH_BOOST if has_alias_overlap(a, b) else 0.0
    return max(edit_similarity, keyword_similarity, alias_boost)


def parse_ai_normalization_response(response: str, expected_count: int) -> Dict[int, AiNormalizationResult]:
    """Parse ``N: SCORE - CANONICAL_NAME - REASON`` lines.

    Lines that do not match, or whose index or score is out of range, are
    ignored.

    Returns:
        Mapping of 1-based pair index to parsed result
    """
    results: Dict[int, AiNormalizationResult] = {}

    for line in response.strip().split("\n"):
        match = RESPONSE_LINE.match(line.strip())
        if not match:
            continue

        index = int(match.group(1))
        score = int(match.group(2))
        if not 1 <= index <= expected_count or not 0 <= score <= 100:
            continue

        results[index] = AiNormalizationResult(
            score=score,
            canonical_name=match.group(3).strip(),
            reason=match.group(4).strip(),
        )

    return results


class EntityNormalizer:
    """Finds likely duplicate entities in a workspace and merges the clear ones."""

    def __init__(
        self,
        session: AsyncSession,
        llm_client: UnifiedLLMClient,
        config: Optional[KnowledgeGraphSettings] = None,
    ):
        self.session = session
        self.llm_client = llm_client
        self.config = config or settings.knowledge_graph
        self.entity_repository = EntityRepository(session, self.config)
        self.mention_repository = EntityMentionRepository(session)

    async def find_duplicate_candidates(
        self,
        workspace_id: str,
        entity_type: Optional[EntityType] = None,
    ) -> List[DuplicateCandidate]:
        """Same-type pairs above ``MIN_STRING_SIMILARITY``, most similar first.

        Only entities sharing the first ``BLOCK_PREFIX_LEN`` characters of
        their normalized name are compared.
        """
        entities = await self.entity_repository.list_by_workspace(
            workspace_id,
            entity_type=entity_type,
            sort="mention_count",
            order="desc",
            limit=self.config.entity_limit,
        )

        blocks: Dict[Tuple[str, str], List[EntityResponse]] = defaultdict(list)
        for entity in entities:
            snapshot = EntityResponse.model_validate(entity)
            blocks[(snapshot.entity_type, snapshot.normalized_name[:BLOCK_PREFIX_LEN])].append(snapshot)

        candidates = []
        for block in blocks.values():
            for i, entity_a in enumerate(block):
                for entity_b in block[i + 1:]:
                    if entity_a.normalized_name == entity_b.normalized_name:
                        continue
                    similarity = combined_similarity(entity_a, entity_b)
                    if similarity >= MIN_STRING_SIMILARITY:
                        candidates.append(
                            DuplicateCandidate(
                                entity_a=entity_a,
                                entity_b=entity_b,
                                string_similarity=similarity,
                            )
                        )

        candidates.sort(key=lambda c: c.string_similarity, reverse=True)
        return candidates

    async def normalize_workspace_entities(
        self,
        workspace_id: str,
        auto_merge: bool = True,
        entity_type: Optional[EntityType] = None,
    ) -> NormalizationResult:
        """Run a deduplication pass. Never raises; failures land in ``errors``.

        Args:
            workspace_id: Workspace to scan
            auto_merge: Merge pairs scored at or above ``AUTO_MERGE_THRESHOLD``
            entity_type: Restrict the pass to one entity type

        Returns:
            NormalizationResult with the remaining suggestions
        """
        result = NormalizationResult(workspace_id=workspace_id)

        try:
            candidates = await self.find_duplicate_candidates(workspace_id, entity_type)
            result.candidates_found = len(candidates)

            if candidates:
                suggestions = await self._score_candidates(candidates, result)
                suggestions.sort(key=lambda s: s.confidence, reverse=True)

                for suggestion in suggestions:
                    if not (auto_merge and suggestion.auto_merge):
                        result.suggestions.append(suggestion)
                    elif await self.execute_merge(suggestion):
                        result.auto_merged += 1
                    else:
                        result.errors.append(
                            f'Auto-merge failed for "{suggestion.entity_a.name}" + "{suggestion.entity_b.name}"'
                        )
                        result.suggestions.append(suggestion.model_copy(update={"auto_merge": False}))

            result.suggestions_generated = len(result.suggestions) + result.auto_merged
        except Exception as e:
            await self.session.rollback()
            LOGGER.error("Entity normalization failed", exc_info=True, extra={"workspace_id": workspace_id})
            result.errors.append(f"Normalization failed: {e}")

        LOGGER.info(
            "Entity normalization finished",
            extra={
                "workspace_id": workspace_id,
                "candidates_found": result.candidates_found,
                "ai_compared": result.ai_compared,
                "auto_merged": result.auto_merged,
                "suggestions": len(result.suggestions),
                "error_count": len(result.errors),
            },
        )
        return result

    async def execute_merge(self, suggestion: NormalizationSuggestion) -> bool:
        """Merge the pair of a suggestion under its recommended name.

        The entity seen in more documents survives; on a tie, the one
        already carrying the recommended name does.

        Returns:
            True if the merge happened
        """
        try:
            entities = await self.entity_repository.get_by_ids(
                [suggestion.entity_a.id, suggestion.entity_b.id]
            )
            entity_a = entities.get(suggestion.entity_a.id)
            entity_b = entities.get(suggestion.entity_b.id)
            if entity_a is None or entity_b is None:
                LOGGER.warning(
                    "Merge skipped, entity no longer exists",
                    extra={"entity_a_id": suggestion.entity_a.id, "entity_b_id": suggestion.entity_b.id},
                )
                return False

            if entity_a.doc_count != entity_b.doc_count:
                target, source = (
                    (entity_a, entity_b) if entity_a.doc_count > entity_b.doc_count else (entity_b, entity_a)
                )
            elif entity_b.name == suggestion.recommended_name:
                target, source = entity_b, entity_a
            else:
                target, source = entity_a, entity_b

            await self.entity_repository.merge(
                [source.id], target.id, merged_name=suggestion.recommended_name
            )
            return True
        except (ValidationError, SQLAlchemyError) as e:
            LOGGER.error(
                f"Merge execution failed: {e}",
                extra={"entity_a_id": suggestion.entity_a.id, "entity_b_id": suggestion.entity_b.id},
            )
            return False

    async def build_prompt(self, batch: List[DuplicateCandidate]) -> str:
        pair_texts = []

        for i, candidate in enumerate(batch, start=1):
            lines = [f"PAIR {i} ({candidate.entity_a.entity_type}):"]
            for label, entity in (("A", candidate.entity_a), ("B", candidate.entity_b)):
                name_line = f'  Name {label}: "{entity.name}"'
                if entity.aliases:
                    name_line += f" (aliases: {', '.join(entity.aliases)})"
                lines.append(name_line)

                mentions = await self.mention_repository.get_by_entity(entity.id, limit=PROMPT_CONTEXTS)
                context = "; ".join(m.context for m in mentions if m.context)
                if context:
                    lines.append(f"  Context {label}: {context}")

            pair_texts.append("\n".join(lines))

        return "Determine if each pair refers to the same entity:\n\n" + "\n\n".join(pair_texts)

    async def _score_candidates(
        self,
        candidates: List[DuplicateCandidate],
        result: NormalizationResult,
    ) -> List[NormalizationSuggestion]:
        suggestions: List[NormalizationSuggestion] = []
        batch_size = self.config.max_normalizer_batch
        timeout = self.config.normalizer_timeout_seconds

        for start in range(0, len(candidates), batch_size):
            batch = candidates[start:start + batch_size]
            try:
                prompt = await self.build_prompt(batch)
                composed = await with_timeout(
                    self.llm_client.compose_text(prompt, system_prompt=SYSTEM_PROMPT, max_tokens=MAX_AI_TOKENS),
                    timeout,
                    f"Entity normalization AI timed out after {timeout:g}s",
                )
                parsed = parse_ai_normalization_response(composed.text, len(batch))
                result.ai_compared += len(batch)

                for index, candidate in enumerate(batch, start=1):
                    ai_score = parsed.get(index)
                    if ai_score is None or ai_score.score < SUGGEST_THRESHOLD:
                        continue
                    suggestions.append(
                        NormalizationSuggestion(
                            entity_a=candidate.entity_a,
                            entity_b=candidate.entity_b,
                            confidence=ai_score.score,
                            recommended_name=ai_score.canonical_name,
                            reason=ai_score.reason,
                            auto_merge=ai_score.score >= AUTO_MERGE_THRESHOLD,
                        )
                    )
            except Exception as e:
                await self.session.rollback()
                LOGGER.error(f"AI duplicate scoring failed: {e}", extra={"batch_size": len(batch)})
                result.errors.append(f"AI batch scoring failed: {e}")
                suggestions.extend(_fallback_suggestions(batch))

        return suggestions


def _fallback_suggestions(batch: List[DuplicateCandidate]) -> List[NormalizationSuggestion]:
    """String-similarity suggestions for a batch the model could not score. Never auto-merged."""
    suggestions = []
    for candidate in batch:
        score = round(candidate.string_similarity * 100)
        if score < SUGGEST_THRESHOLD:
            continue
        keeper = (
            candidate.entity_a
            if candidate.entity_a.doc_count >= candidate.entity_b.doc_count
            else candidate.entity_b
        )
        suggestions.append(
            NormalizationSuggestion(
                entity_a=candidate.entity_a,
                entity_b=candidate.entity_b,
                confidence=score,
                recommended_name=keeper.name,
                reason=FALLBACK_REASON,
                auto_merge=False,
            )
        )
    return suggestions
