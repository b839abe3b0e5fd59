"""
Record codec.

Maps job documents between the domain shape, where the identity lives
under ``id``, and the record shape, where it lives under the table's
primary-key column. Every other field is left alone, so the same functions
serve full jobs and partial filters.
"""

from collections.abc import Mapping
from typing import Any

from jobstore.constants import DOMAIN_KEY, PRIMARY_KEY


def _rename(document: Mapping[str, Any], source: str, target: str) -> dict[str, Any]:
    if source not in document:
        return dict(document)
    if target in document:
        raise ValueError(f"document has both {source!r} and {target!r}")
    return {(target if key == source else key): value for key, value in document.items()}


def encode(document: Mapping[str, Any]) -> dict[str, Any]:
    """
    Convert a domain document to the record shape.

    Args:
        document: A job document or partial filter.

    Returns:
        A new dict with ``id`` renamed to the primary-key name.
    """
    return _rename(document, DOMAIN_KEY, PRIMARY_KEY)


def decode(record: Mapping[str, Any]) -> dict[str, Any]:
    """
    Convert a record back to the domain shape.

    Args:
        record: A record or partial record.

    Returns:
        A new dict with the primary-key name renamed to ``id``.
    """
    return _rename(record, PRIMARY_KEY, DOMAIN_KEY)
