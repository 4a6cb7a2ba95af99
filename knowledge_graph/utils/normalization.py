"""Name normalization and stable key helpers for entity resolution.

The normalized name is one third of an entity's dedup key
``(workspace_id, normalized_name, entity_type)``; the mention key is the
hash used to make re-ingested mentions idempotent.
"""

import hashlib
import unicodedata
import uuid
from typing import Optional, Tuple


def normalize_name(name: Optional[str]) -> str:
    """Canonicalize an entity name for deduplication.

    Applies NFC Unicode normalization, trims surrounding whitespace and
    lowercases the result.

    Args:
        name: Raw entity name as supplied by the caller

    Returns:
        str: Normalized name, or an empty string for empty/whitespace input
    """
    if not name:
        return ""
    return unicodedata.normalize("NFC", name).strip().lower()


def entity_cache_key(normalized_name: str, entity_type: str) -> str:
    """Key used by the ingester's per-call entity cache."""
    return f"{normalized_name}::{entity_type}"


def generate_mention_key(
    product_source: str,
    doc_id: Optional[str],
    source_ref: Optional[str],
    field_path: Optional[str],
) -> str:
    """Generate the dedup key for a mention.

    Nullable columns cannot take part in a SQL unique constraint, so the
    identifying fields are folded into one non-null hash instead. Context
    and confidence are not part of the key: the same entity observed at
    the same location is the same mention.

    Args:
        product_source: Product surface that produced the mention
        doc_id: Document id (docs surface only)
        source_ref: Product-specific reference
        field_path: Optional location inside the document

    Returns:
        str: Mention key (32-char hex hash)
    """
    key_input = "|".join([product_source, doc_id or "", source_ref or "", field_path or ""])
    return hashlib.sha256(key_input.encode("utf-8")).hexdigest()[:32]


def generate_short_id() -> str:
    """Generate a 12-character id for graph rows."""
    return uuid.uuid4().hex[:12]


def canonical_pair(entity_a_id: str, entity_b_id: str) -> Tuple[str, str]:
    """Order two entity ids so the smaller one is always ``from``."""
    if entity_a_id <= entity_b_id:
        return entity_a_id, entity_b_id
    return entity_b_id, entity_a_id
