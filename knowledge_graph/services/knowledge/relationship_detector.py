"""Relationship detection passes.

A pass moves through ``idle -> scanning -> scoring -> ai_labeling -> done``:
find co-occurring pairs, create or refresh their deterministic
``co_occurrence`` relationships, then let the AI labeler add typed ones.
Both entry points return a ``DetectionResult`` and never raise; failures
are reported in ``errors``.
"""

from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.core.config import KnowledgeGraphSettings, settings
from knowledge_graph.core.exceptions import QuotaExceededError
from knowledge_graph.core.unified_llm import UnifiedLLMClient
from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.repositories.entity_relationship_repository import EntityRelationshipRepository
from knowledge_graph.schemas.enums import RelationshipType
from knowledge_graph.schemas.knowledge import CoOccurrencePair, DetectionResult, DetectionState
from knowledge_graph.services.knowledge.cooccurrence import CoOccurrenceDetector, canonicalize_pair
from knowledge_graph.services.knowledge.evidence import EvidenceGatherer, calculate_base_strength
from knowledge_graph.services.knowledge.relationship_labeler import RelationshipLabeler
from knowledge_graph.utils.logging import get_logger

LOGGER = get_logger(__name__)


class RelationshipDetector:
    """Runs full-workspace and incremental relationship detection."""

    def __init__(
        self,
        session: AsyncSession,
        llm_client: UnifiedLLMClient,
        config: Optional[KnowledgeGraphSettings] = None,
    ):
        """Initialize the detector.

        Args:
            session: Database session
            llm_client: Compose-text client used for AI labeling
            config: Quotas and tuning knobs
        """
        self.session = session
        self.config = config or settings.knowledge_graph
        self.co_occurrence_detector = CoOccurrenceDetector(session)
        self.relationship_repository = EntityRelationshipRepository(session, self.config)
        self.evidence_gatherer = EvidenceGatherer(EntityMentionRepository(session))
        self.labeler = RelationshipLabeler(
            self.relationship_repository,
            self.evidence_gatherer,
            llm_client,
            self.config,
        )

    async def detect_workspace_relationships(self, workspace_id: str) -> DetectionResult:
        """Rebuild relationships for every co-occurring pair of a workspace."""
        result = DetectionResult()

        try:
            self._advance(result, DetectionState.SCANNING, workspace_id)
            pairs = await self.co_occurrence_detector.find_co_occurrences(workspace_id)
            await self._run_pipeline(pairs, workspace_id, result)
        except QuotaExceededError as e:
            LOGGER.warning(str(e), extra={"workspace_id": workspace_id})
            result.errors.append(str(e))
        except Exception as e:
            await self.session.rollback()
            LOGGER.error("Workspace detection failed", exc_info=True, extra={"workspace_id": workspace_id})
            result.errors.append(f"Detection failed: {e}")

        self._log_summary("Workspace detection finished", workspace_id, result)
        return result

    async def update_relationships_for_entity(self, entity_id: str, workspace_id: str) -> DetectionResult:
        """Refresh relationships of one entity after it gained mentions.

        Produces the same relationship content for the entity's pairs as a
        full workspace pass would.
        """
        result = DetectionResult()

        try:
            self._advance(result, DetectionState.SCANNING, workspace_id)
            pairs = await self.co_occurrence_detector.find_co_occurrences_for_entity(entity_id, workspace_id)
            await self._run_pipeline([canonicalize_pair(pair) for pair in pairs], workspace_id, result)
        except QuotaExceededError as e:
            LOGGER.warning(str(e), extra={"workspace_id": workspace_id, "entity_id": entity_id})
            result.errors.append(str(e))
        except Exception as e:
            await self.session.rollback()
            LOGGER.error(
                "Incremental update failed",
                exc_info=True,
                extra={"workspace_id": workspace_id, "entity_id": entity_id},
            )
            result.errors.append(f"Incremental update failed: {e}")

        self._log_summary("Incremental detection finished", workspace_id, result)
        return result

    async def _run_pipeline(
        self,
        pairs: List[CoOccurrencePair],
        workspace_id: str,
        result: DetectionResult,
    ) -> None:
        result.co_occurrences_found = len(pairs)

        if pairs:
            self._advance(result, DetectionState.SCORING, workspace_id)
            await self._score_pairs(pairs, workspace_id, result)

            self._advance(result, DetectionState.AI_LABELING, workspace_id)
            await self.labeler.label_relationships(pairs, workspace_id, result)

        self._advance(result, DetectionState.DONE, workspace_id)

    async def _score_pairs(
        self,
        pairs: List[CoOccurrencePair],
        workspace_id: str,
        result: DetectionResult,
    ) -> None:
        """Create or refresh the co_occurrence relationship of every pair."""
        for pair in pairs:
            try:
                strength = calculate_base_strength(pair.shared_doc_count, self.config.strength_cap_docs)
                evidence = await self.evidence_gatherer.gather(
                    pair.entity_a_id,
                    pair.entity_b_id,
                    pair.shared_doc_ids,
                    max_docs=self.config.max_evidence_docs,
                )

                existing = await self.relationship_repository.get_by_pair(
                    pair.entity_a_id, pair.entity_b_id, RelationshipType.CO_OCCURRENCE
                )
                if existing:
                    await self.relationship_repository.update(existing.id, strength=strength, evidence=evidence)
                    result.relationships_updated += 1
                    continue

                created = await self.relationship_repository.create_if_absent(
                    workspace_id,
                    pair.entity_a_id,
                    pair.entity_b_id,
                    RelationshipType.CO_OCCURRENCE,
                    strength=strength,
                    evidence=evidence,
                )
                if created:
                    result.relationships_created += 1
            except QuotaExceededError:
                raise
            except Exception as e:
                await self.session.rollback()
                LOGGER.warning(
                    "Failed to process co-occurrence",
                    exc_info=True,
                    extra={"entity_a_id": pair.entity_a_id, "entity_b_id": pair.entity_b_id},
                )
                result.errors.append(
                    f"Failed to process co-occurrence for {pair.entity_a_name} <-> {pair.entity_b_name}: {e}"
                )

    @staticmethod
    def _advance(result: DetectionResult, state: DetectionState, workspace_id: str) -> None:
        LOGGER.debug(
            f"Detection state {result.state.value} -> {state.value}",
            extra={"workspace_id": workspace_id},
        )
        result.state = state

    @staticmethod
    def _log_summary(message: str, workspace_id: str, result: DetectionResult) -> None:
        LOGGER.info(
            message,
            extra={
                "workspace_id": workspace_id,
                "co_occurrences_found": result.co_occurrences_found,
                "ai_labeled": result.ai_labeled,
                "relationships_created": result.relationships_created,
                "relationships_updated": result.relationships_updated,
                "error_count": len(result.errors),
                "state": result.state.value,
            },
        )
