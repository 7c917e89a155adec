"""Static collection rules and the field label <-> metafield key transform.

Each supported collection requires an ordered set of variant fields. Field
labels are what merchants see ("Group Name"); metafield keys are what Shopify
stores ("group_name"). The transform between them must stay exactly
invertible for every label in the table, which is checked at import.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

GROUP_NAME = "Group Name"
STYLE = "Style"
METAL = "Metal"
SHAPE = "Shape"

VARIANT_FIELD_LABELS: tuple[str, ...] = (GROUP_NAME, STYLE, METAL, SHAPE)

COLLECTION_RULES: Mapping[str, tuple[str, ...]] = {
    "engagement-rings": (GROUP_NAME, STYLE, METAL, SHAPE),
    "wedding-rings": (GROUP_NAME, STYLE, METAL),
}


class UnsupportedCollectionError(ValueError):
    def __init__(self, collection_handle: str | None) -> None:
        self.collection_handle = collection_handle
        supported = ", ".join(f'"{handle}"' for handle in COLLECTION_RULES)
        super().__init__(
            "This product is not part of a supported collection. "
            f"Please make sure the product belongs to {supported}."
        )


def metafield_key_for_label(label: str) -> str:
    return label.lower().replace(" ", "_")


METAFIELD_KEY_BY_LABEL: Mapping[str, str] = {
    label: metafield_key_for_label(label) for label in VARIANT_FIELD_LABELS
}


def labels_by_metafield_key(labels: Iterable[str]) -> dict[str, str]:
    return {metafield_key_for_label(label): label for label in labels}


def is_supported_collection(collection_handle: str | None) -> bool:
    return bool(collection_handle) and collection_handle in COLLECTION_RULES


def required_fields_for_collection(collection_handle: str | None) -> tuple[str, ...]:
    if not collection_handle or collection_handle not in COLLECTION_RULES:
        raise UnsupportedCollectionError(collection_handle)
    return COLLECTION_RULES[collection_handle]


def _check_rules(rules: Mapping[str, tuple[str, ...]]) -> None:
    for handle, labels in rules.items():
        if not handle:
            raise ValueError("Collection rule handles cannot be empty")
        if any(not label or label != label.strip() for label in labels):
            raise ValueError(f"Collection rule {handle!r} has an empty or padded field label")
        if len(set(labels)) != len(labels):
            raise ValueError(f"Collection rule {handle!r} repeats a field label")
        keys = [metafield_key_for_label(label) for label in labels]
        if len(set(keys)) != len(keys):
            raise ValueError(f"Collection rule {handle!r} has labels that map to the same metafield key")


_check_rules(COLLECTION_RULES)
