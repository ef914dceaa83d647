"""Prefixed random identifiers."""
import uuid


def generate_id(prefix: str) -> str:
    """Return ``<prefix>_<32 hex chars>``."""

    return f"{prefix}_{uuid.uuid4().hex}"


__all__ = ["generate_id"]
