"""
ID generation utilities for business plan entities
"""

import uuid


def generate_entity_id(prefix: str) -> str:
    """
    Generate a prefixed entity ID

    Args:
        prefix: Entity kind, e.g. "chapter", "section", "task"

    Returns:
        ID like "chapter_3f9a1c2b7d4e"
    """
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def generate_temp_id(prefix: str) -> str:
    """Placeholder ID for optimistic entities not yet confirmed by the store"""
    return f"temp-{prefix}-{uuid.uuid4().hex[:8]}"


def is_temp_id(entity_id: str) -> bool:
    return entity_id.startswith("temp-")
