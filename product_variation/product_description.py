"""Grouped key/value product description stored as one JSON metafield.

Stored shape: ``{"<group name>": {"<key>": "<value>", ...}, ...}``. Group and
key order is preserved in both directions.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from product_variation.schemas import DescriptionField, DescriptionGroup


class DescriptionFormatError(ValueError):
    pass


def parse_description(raw: str | None) -> list[DescriptionGroup]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise DescriptionFormatError("Stored product description is not valid JSON.") from exc
    if not isinstance(parsed, dict):
        raise DescriptionFormatError("Stored product description must be a JSON object.")

    groups: list[DescriptionGroup] = []
    for group_name, inner in parsed.items():
        if not isinstance(inner, dict):
            raise DescriptionFormatError(f"Description group {group_name!r} must be a JSON object.")
        groups.append(
            DescriptionGroup(
                groupName=group_name,
                fields=[
                    DescriptionField(key=key, value=value if isinstance(value, str) else json.dumps(value))
                    for key, value in inner.items()
                ],
            )
        )
    return groups


def build_description(groups: Sequence[DescriptionGroup]) -> dict[str, dict[str, Any]]:
    """Serializable description; blank groups and keys are dropped, repeated group names rejected."""
    result: dict[str, dict[str, Any]] = {}
    for group in groups:
        name = group.groupName.strip()
        if not name:
            continue
        if name in result:
            raise DescriptionFormatError(f"Group name must be unique: {name}")
        result[name] = {item.key.strip(): item.value for item in group.fields if item.key.strip()}
    return result
