"""AI labeling of co-occurring entity pairs.

Pairs sharing enough documents are sent, in small batches, to the
compose-text client. Each response line assigns a relationship type, a
label and a confidence; accepted results are stored as typed relationships
next to the deterministic ``co_occurrence`` ones.
"""

import re
from typing import Dict, List, Optional

from knowledge_graph.core.config import KnowledgeGraphSettings, settings
from knowledge_graph.core.exceptions import QuotaExceededError
from knowledge_graph.core.unified_llm import UnifiedLLMClient
from knowledge_graph.repositories.entity_relationship_repository import EntityRelationshipRepository
from knowledge_graph.schemas.enums import RelationshipType
from knowledge_graph.schemas.knowledge import AiRelationshipResult, CoOccurrencePair, DetectionResult
from knowledge_graph.services.knowledge.evidence import EvidenceGatherer, calculate_base_strength
from knowledge_graph.utils.logging import get_logger
from knowledge_graph.utils.timeout import with_timeout

LOGGER = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a relationship analysis expert for a document management system. "
    "For each numbered PAIR below, determine the nature of the relationship between "
    "the two entities based on the documents they appear in together.\n\n"
    "Output EXACTLY one line per pair in this format: N: TYPE - LABEL - CONFIDENCE - REASON\n"
    "Where:\n"
    "  N = pair number\n"
    "  TYPE = one of: contractual, financial, organizational, temporal, custom\n"
    "  LABEL = short human-readable relationship description (e.g., 'contracted with', 'pays', 'reports to')\n"
    "  CONFIDENCE = 0-100 confidence in the relationship type\n"
    "  REASON = brief explanation\n\n"
    "If the relationship is unclear or purely coincidental, use TYPE=co_occurrence with a low confidence.\n\n"
    "Example: 1: contractual - contracted with - 92 - Both entities appear as parties in a services agreement"
)

RESPONSE_LINE = re.compile(r"^(\d+)\s*:\s*(\w+)\s*[-–—]\s*(.+?)\s*[-–—]\s*(\d+)\s*[-–—]\s*(.+)")

PROMPT_EVIDENCE_DOCS = 3
PROMPT_ALIASES = 3
# Below this confidence a co_occurrence verdict adds nothing to the deterministic row
MIN_CO_OCCURRENCE_CONFIDENCE = 50
BASE_STRENGTH_WEIGHT = 0.4
AI_CONFIDENCE_WEIGHT = 0.6


def parse_ai_relationship_response(response: str, expected_count: int) -> Dict[int, AiRelationshipResult]:
    """Parse ``N: TYPE - LABEL - CONFIDENCE - REASON`` lines.

    Lines that do not match, refer to a pair outside ``1..expected_count``
    or carry a confidence above 100 are ignored. Unknown types become
    ``custom``.

    Args:
        response: Raw model output
        expected_count: Number of pairs in the batch

    Returns:
        Mapping of 1-based pair index to parsed result
    """
    results: Dict[int, AiRelationshipResult] = {}

    for line in response.strip().split("\n"):
        match = RESPONSE_LINE.match(line.strip())
        if not match:
            continue

        index = int(match.group(1))
        confidence = int(match.group(4))
        if not 1 <= index <= expected_count or not 0 <= confidence <= 100:
            continue

        raw_type = match.group(2).strip().lower()
        try:
            relationship_type = RelationshipType(raw_type)
        except ValueError:
            relationship_type = RelationshipType.CUSTOM

        results[index] = AiRelationshipResult(
            relationship_type=relationship_type,
            label=match.group(3).strip(),
            confidence=confidence,
            reason=match.group(5).strip(),
        )

    return results


def blend_strength(base_strength: float, confidence: int) -> float:
    return base_strength * BASE_STRENGTH_WEIGHT + (confidence / 100) * AI_CONFIDENCE_WEIGHT


class RelationshipLabeler:
    """Refines co-occurring pairs with AI-assigned types and labels."""

    def __init__(
        self,
        relationship_repository: EntityRelationshipRepository,
        evidence_gatherer: EvidenceGatherer,
        llm_client: UnifiedLLMClient,
        config: Optional[KnowledgeGraphSettings] = None,
    ):
        self.relationship_repository = relationship_repository
        self.evidence_gatherer = evidence_gatherer
        self.llm_client = llm_client
        self.config = config or settings.knowledge_graph

    async def build_prompt(self, batch: List[CoOccurrencePair]) -> str:
        """Describe each pair of the batch for the model."""
        pair_texts = []

        for i, pair in enumerate(batch, start=1):
            evidence = await self.evidence_gatherer.gather(
                pair.entity_a_id,
                pair.entity_b_id,
                pair.shared_doc_ids[:PROMPT_EVIDENCE_DOCS],
                max_docs=self.config.max_evidence_docs,
            )

            lines = [
                f"PAIR {i}:",
                f'  Entity A: "{pair.entity_a_name}" ({pair.entity_a_type})'
                + _format_aliases(pair.entity_a_aliases),
                f'  Entity B: "{pair.entity_b_name}" ({pair.entity_b_type})'
                + _format_aliases(pair.entity_b_aliases),
                f"  Shared documents: {pair.shared_doc_count}",
            ]
            if evidence:
                lines.append("  Document contexts:")
                lines.extend(f"    - {item['context']}" for item in evidence)

            pair_texts.append("\n".join(lines))

        return "Analyze the relationship between each entity pair:\n\n" + "\n\n".join(pair_texts)

    async def label_relationships(
        self,
        pairs: List[CoOccurrencePair],
        workspace_id: str,
        result: DetectionResult,
    ) -> None:
        """Label eligible pairs batch by batch, accumulating into ``result``.

        A failed or timed-out batch is recorded in ``result.errors`` and the
        remaining batches still run. Quota errors propagate.
        """
        candidates = [
            pair for pair in pairs
            if pair.shared_doc_count >= self.config.min_cooccurrence_docs_for_ai
        ]
        if not candidates:
            return

        batch_size = self.config.max_ai_batch
        for start in range(0, len(candidates), batch_size):
            batch = candidates[start:start + batch_size]
            try:
                await self._label_batch(batch, workspace_id, result)
            except QuotaExceededError:
                raise
            except Exception as e:
                await self.relationship_repository.session.rollback()
                LOGGER.error(
                    f"AI labeling failed: {e}",
                    exc_info=True,
                    extra={"workspace_id": workspace_id, "batch_size": len(batch)},
                )
                result.errors.append(f"AI batch labeling failed: {e}")

    async def _label_batch(
        self,
        batch: List[CoOccurrencePair],
        workspace_id: str,
        result: DetectionResult,
    ) -> None:
        prompt = await self.build_prompt(batch)
        timeout = self.config.detector_timeout_seconds

        composed = await with_timeout(
            self.llm_client.compose_text(
                prompt,
                system_prompt=SYSTEM_PROMPT,
                max_tokens=self.config.max_ai_tokens,
            ),
            timeout,
            f"Relationship detection AI timed out after {timeout:g}s",
        )
        parsed = parse_ai_relationship_response(composed.text, len(batch))

        for index, pair in enumerate(batch, start=1):
            ai_result = parsed.get(index)
            if ai_result is None:
                continue
            if (
                ai_result.relationship_type == RelationshipType.CO_OCCURRENCE
                and ai_result.confidence < MIN_CO_OCCURRENCE_CONFIDENCE
            ):
                continue

            result.ai_labeled += 1
            strength = blend_strength(
                calculate_base_strength(pair.shared_doc_count, self.config.strength_cap_docs),
                ai_result.confidence,
            )
            evidence = await self.evidence_gatherer.gather(
                pair.entity_a_id,
                pair.entity_b_id,
                pair.shared_doc_ids,
                max_docs=self.config.max_evidence_docs,
            )

            existing = await self.relationship_repository.get_by_pair(
                pair.entity_a_id, pair.entity_b_id, ai_result.relationship_type
            )
            if existing:
                await self.relationship_repository.update(
                    existing.id, label=ai_result.label, strength=strength, evidence=evidence
                )
                result.relationships_updated += 1
            else:
                created = await self.relationship_repository.create_if_absent(
                    workspace_id,
                    pair.entity_a_id,
                    pair.entity_b_id,
                    ai_result.relationship_type,
                    label=ai_result.label,
                    strength=strength,
                    evidence=evidence,
                )
                if created:
                    result.relationships_created += 1

        LOGGER.info(
            "Labeled relationship batch",
            extra={
                "workspace_id": workspace_id,
                "batch_size": len(batch),
                "parsed": len(parsed),
                "provider": composed.provider,
            },
        )


def _format_aliases(aliases: List[str]) -> str:
    if not aliases:
        return ""
    return f" [aliases: {', '.join(aliases[:PROMPT_ALIASES])}]"
