"""Relationship evidence snippets and deterministic strength."""

from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError

from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_CONTEXT = "Co-occurrence in document"
UNAVAILABLE_CONTEXT = "Context unavailable"
SNIPPETS_PER_ENTITY = 2


def calculate_base_strength(shared_doc_count: int, cap_docs: int = 10) -> float:
    """Strength of a co-occurrence from its shared document count.

    Scales linearly from 0.1 at one shared document to 1.0 at ``cap_docs``
    and saturates there.
    """
    if cap_docs <= 1:
        return 1.0
    return min(0.1 + (shared_doc_count - 1) * (0.9 / (cap_docs - 1)), 1.0)


class EvidenceGatherer:
    """Builds human-readable context for a pair of entities."""

    def __init__(self, mention_repository: EntityMentionRepository):
        self.mention_repository = mention_repository

    async def gather(
        self,
        entity_a_id: str,
        entity_b_id: str,
        shared_doc_ids: List[str],
        max_docs: int = 5,
    ) -> List[Dict[str, Any]]:
        """Collect evidence for a pair from the documents they share.

        Args:
            entity_a_id: First entity
            entity_b_id: Second entity
            shared_doc_ids: Documents mentioning both entities
            max_docs: Maximum number of documents to look at

        Returns:
            List of ``{"doc_id", "context"}`` dicts, one per inspected document
        """
        evidence = []

        for doc_id in shared_doc_ids[:max_docs]:
            try:
                mentions = await self.mention_repository.get_by_doc(doc_id)
            except SQLAlchemyError:
                LOGGER.warning(
                    "Mention lookup failed while gathering evidence",
                    extra={"doc_id": doc_id},
                )
                await self.mention_repository.session.rollback()
                evidence.append({"doc_id": doc_id, "context": UNAVAILABLE_CONTEXT})
                continue

            parts = []
            for entity_id in (entity_a_id, entity_b_id):
                contexts = [m.context for m in mentions if m.entity_id == entity_id and m.context]
                if contexts:
                    parts.append("; ".join(contexts[:SNIPPETS_PER_ENTITY]))

            evidence.append({"doc_id": doc_id, "context": " | ".join(parts) if parts else DEFAULT_CONTEXT})

        return evidence
