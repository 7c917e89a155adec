"""Duplicate-guarded upsert of product variant metafields.

A save moves through validation, a duplicate check against the product's
collection, and one batched ``metafieldsSet`` write. Each step either hands
over to the next or ends the request with a typed :class:`SaveResult`; no step
retries, and a failure to reach Shopify ends the request straight away.

The duplicate check and the write are separate calls, so two concurrent saves
of the same combination can both pass the check before either one writes.
Nothing here prevents that.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from product_variation.config import settings
from product_variation.metafield_rules import (
    COLLECTION_RULES,
    UnsupportedCollectionError,
    labels_by_metafield_key,
    metafield_key_for_label,
    required_fields_for_collection,
)
from product_variation.shopify_api import ShopifyApiClient, ShopifyApiError

logger = logging.getLogger(__name__)

METAFIELD_TYPE = "single_line_text_field"
DUPLICATE_MESSAGE = "A product with the same variant combination already exists in this collection."
SUCCESS_MESSAGE = "Product variant saved successfully."

SaveStatus = Literal[
    "succeeded",
    "validation_failed",
    "duplicate_found",
    "write_failed",
    "upstream_unavailable",
    "unsupported_collection",
]


@dataclass(frozen=True)
class CollectionSchema:
    collection_handle: str
    required_fields: tuple[str, ...]
    choices_by_field: Mapping[str, tuple[str, ...]]


@dataclass(frozen=True)
class ProductSnapshot:
    product_gid: str
    title: str | None
    collection_handle: str | None
    collection_gid: str | None
    values: Mapping[str, str]


@dataclass(frozen=True)
class ProductAssignment:
    product_gid: str
    collection_handle: str
    collection_gid: str
    values: Mapping[str, str]


@dataclass(frozen=True)
class WriteResult:
    ok: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class SaveResult:
    status: SaveStatus
    messages: tuple[str, ...]
    missing_fields: tuple[str, ...] = ()
    values: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"


def resolve_schema(collection_handle: str, definitions: Sequence[Mapping[str, Any]]) -> CollectionSchema:
    """Required fields of a collection and the allowed choices for each one.

    ``definitions`` are records with ``name`` and ``choices``. A required field
    without a matching definition, or whose definition has no choices, maps to
    an empty tuple: free text.
    """
    required_fields = required_fields_for_collection(collection_handle)
    choices_by_name: dict[str, tuple[str, ...]] = {}
    for definition in definitions:
        name = definition.get("name")
        if isinstance(name, str) and name not in choices_by_name:
            choices_by_name[name] = tuple(definition.get("choices") or ())
    return CollectionSchema(
        collection_handle=collection_handle,
        required_fields=required_fields,
        choices_by_field={label: choices_by_name.get(label, ()) for label in required_fields},
    )


def _quote_search_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_duplicate_query(namespace: str, required_fields: Sequence[str], values: Mapping[str, str]) -> str:
    """Shopify product search matching every required field's value exactly."""
    return " AND ".join(
        f"metafields.{namespace}.{metafield_key_for_label(label)}:{_quote_search_value(values[label])}"
        for label in required_fields
    )


def missing_required_fields(required_fields: Sequence[str], values: Mapping[str, str]) -> tuple[str, ...]:
    return tuple(label for label in required_fields if not (values.get(label) or "").strip())


class VariantUpsertService:
    def __init__(
        self,
        *,
        api: ShopifyApiClient,
        shop_domain: str,
        access_token: str,
        namespace: str | None = None,
    ) -> None:
        self._api = api
        self._shop_domain = shop_domain
        self._access_token = access_token
        self._namespace = namespace or settings.VARIANT_METAFIELD_NAMESPACE

    async def load_schema(self, collection_handle: str) -> CollectionSchema:
        # Unsupported handles fail before any Shopify call.
        required_fields_for_collection(collection_handle)
        definitions = await self._api.list_metafield_definitions(
            shop_domain=self._shop_domain,
            access_token=self._access_token,
            namespace=self._namespace,
        )
        return resolve_schema(collection_handle, definitions)

    async def read_product(self, product_gid: str) -> ProductSnapshot:
        product = await self._api.get_product_variant_fields(
            shop_domain=self._shop_domain,
            access_token=self._access_token,
            product_gid=product_gid,
            namespace=self._namespace,
        )
        collection_handle = product.get("collectionHandle") or None
        label_by_key = labels_by_metafield_key(COLLECTION_RULES.get(collection_handle or "", ()))
        values: dict[str, str] = {}
        for metafield in product.get("metafields") or []:
            label = label_by_key.get(metafield["key"])
            if label is not None:
                values[label] = metafield["value"]
        return ProductSnapshot(
            product_gid=product["productGid"],
            title=product.get("title"),
            collection_handle=collection_handle,
            collection_gid=product.get("collectionGid") or None,
            values=values,
        )

    async def find_duplicate(
        self,
        *,
        product_gid: str,
        collection_gid: str,
        required_fields: Sequence[str],
        values: Mapping[str, str],
    ) -> bool:
        if not required_fields:
            return False
        return await self._api.has_matching_product_in_collection(
            shop_domain=self._shop_domain,
            access_token=self._access_token,
            search_query=build_duplicate_query(self._namespace, required_fields, values),
            collection_gid=collection_gid,
            exclude_product_gid=product_gid,
        )

    async def write_metafields(self, product_gid: str, values: Mapping[str, str]) -> WriteResult:
        metafields = [
            {
                "ownerId": product_gid,
                "namespace": self._namespace,
                "key": metafield_key_for_label(label),
                "type": METAFIELD_TYPE,
                "value": value,
            }
            for label, value in values.items()
        ]
        user_errors = await self._api.set_metafields(
            shop_domain=self._shop_domain,
            access_token=self._access_token,
            metafields=metafields,
        )
        if not user_errors:
            return WriteResult(ok=True)
        errors = []
        for error in user_errors:
            path = ".".join(str(part) for part in error.get("field") or [])
            message = str(error.get("message") or "Unknown error")
            errors.append(f"{path}: {message}" if path else message)
        return WriteResult(ok=False, errors=tuple(errors))

    async def save_assignment(self, assignment: ProductAssignment) -> SaveResult:
        log_extra = {
            "shop_domain": self._shop_domain,
            "product_gid": assignment.product_gid,
            "collection_handle": assignment.collection_handle,
        }
        try:
            required_fields = required_fields_for_collection(assignment.collection_handle)
        except UnsupportedCollectionError as exc:
            return SaveResult(status="unsupported_collection", messages=(str(exc),))

        missing = missing_required_fields(required_fields, assignment.values)
        if missing:
            logger.info("Variant save rejected: missing fields", extra={**log_extra, "missing": missing})
            return SaveResult(
                status="validation_failed",
                messages=tuple(f"{label} is required." for label in missing),
                missing_fields=missing,
            )
        values = {label: assignment.values[label] for label in required_fields}

        try:
            duplicate = await self.find_duplicate(
                product_gid=assignment.product_gid,
                collection_gid=assignment.collection_gid,
                required_fields=required_fields,
                values=values,
            )
            if duplicate:
                logger.info("Variant save rejected: duplicate combination", extra=log_extra)
                return SaveResult(status="duplicate_found", messages=(DUPLICATE_MESSAGE,), values=values)

            written = await self.write_metafields(assignment.product_gid, values)
        except ShopifyApiError as exc:
            logger.warning("Variant save failed: Shopify unavailable", extra={**log_extra, "error": str(exc)})
            return SaveResult(status="upstream_unavailable", messages=(str(exc),), values=values)

        if not written.ok:
            logger.warning("Variant save rejected by Shopify", extra={**log_extra, "errors": written.errors})
            return SaveResult(status="write_failed", messages=written.errors, values=values)

        return SaveResult(status="succeeded", messages=(SUCCESS_MESSAGE,), values=values)
