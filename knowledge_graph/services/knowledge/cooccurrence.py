"""Finds entity pairs that appear in the same documents."""

from collections import defaultdict
from typing import Dict, List, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_graph.repositories.entity_mention_repository import EntityMentionRepository
from knowledge_graph.repositories.entity_repository import EntityRepository
from knowledge_graph.schemas.knowledge import CoOccurrencePair
from knowledge_graph.utils.logging import get_logger

LOGGER = get_logger(__name__)


class CoOccurrenceDetector:
    """Computes shared-document pairs from the mentions table.

    Workspace-wide results are already in canonical direction
    (``entity_a_id < entity_b_id``). Entity-scoped results put the given
    entity first; callers canonicalize them before persisting.
    """

    def __init__(self, session: AsyncSession):
        self.mention_repository = EntityMentionRepository(session)
        self.entity_repository = EntityRepository(session)

    async def find_co_occurrences(self, workspace_id: str) -> List[CoOccurrencePair]:
        """All entity pairs of a workspace sharing at least one document."""
        rows = await self.mention_repository.find_co_occurrence_rows(workspace_id)
        pairs = await self._build_pairs(rows)

        LOGGER.info(
            "Found workspace co-occurrences",
            extra={"workspace_id": workspace_id, "pair_count": len(pairs)},
        )
        return pairs

    async def find_co_occurrences_for_entity(
        self, entity_id: str, workspace_id: str
    ) -> List[CoOccurrencePair]:
        """Pairs involving one entity, with that entity as ``entity_a``."""
        rows = await self.mention_repository.find_co_occurrence_rows(workspace_id, entity_id=entity_id)
        return await self._build_pairs(rows)

    async def _build_pairs(self, rows: List[Tuple[str, str, str]]) -> List[CoOccurrencePair]:
        shared: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        for entity_a_id, entity_b_id, doc_id in rows:
            shared[(entity_a_id, entity_b_id)].add(doc_id)

        entity_ids = {entity_id for pair in shared for entity_id in pair}
        entities = await self.entity_repository.get_by_ids(list(entity_ids))

        ordered = sorted(shared.items(), key=lambda item: (-len(item[1]), item[0]))
        pairs = []
        for (entity_a_id, entity_b_id), doc_ids in ordered:
            entity_a = entities.get(entity_a_id)
            entity_b = entities.get(entity_b_id)
            # Deleted since the mention scan
            if entity_a is None or entity_b is None:
                continue

            pairs.append(
                CoOccurrencePair(
                    entity_a_id=entity_a.id,
                    entity_a_name=entity_a.name,
                    entity_a_type=entity_a.entity_type,
                    entity_a_aliases=list(entity_a.aliases or []),
                    entity_b_id=entity_b.id,
                    entity_b_name=entity_b.name,
                    entity_b_type=entity_b.entity_type,
                    entity_b_aliases=list(entity_b.aliases or []),
                    shared_doc_ids=sorted(doc_ids),
                    shared_doc_count=len(doc_ids),
                )
            )
        return pairs


def canonicalize_pair(pair: CoOccurrencePair) -> CoOccurrencePair:
    """Return the pair with the smaller entity id as ``entity_a``."""
    if pair.entity_a_id <= pair.entity_b_id:
        return pair
    return CoOccurrencePair(
        entity_a_id=pair.entity_b_id,
        entity_a_name=pair.entity_b_name,
        entity_a_type=pair.entity_b_type,
        entity_a_aliases=pair.entity_b_aliases,
        entity_b_id=pair.entity_a_id,
        entity_b_name=pair.entity_a_name,
        entity_b_type=pair.entity_a_type,
        entity_b_aliases=pair.entity_a_aliases,
        shared_doc_ids=pair.shared_doc_ids,
        shared_doc_count=pair.shared_doc_count,
    )
