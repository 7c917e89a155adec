from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from product_variation.config import settings

logger = logging.getLogger(__name__)

_PRODUCT_GID_PREFIX = "gid://shopify/Product/"
_COLLECTION_GID_PREFIX = "gid://shopify/Collection/"
_PAGE_SIZE = 50


class ShopifyApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


def _require_gid(value: str, *, prefix: str, label: str) -> str:
    cleaned = value.strip()
    if not cleaned.startswith(prefix) or len(cleaned) == len(prefix):
        raise ShopifyApiError(message=f"{label} must be a valid Shopify GID.", status_code=400)
    return cleaned


def _parse_choices(validations: Any) -> list[str]:
    if not isinstance(validations, list):
        return []
    for validation in validations:
        if not isinstance(validation, dict) or validation.get("name") != "choices":
            continue
        raw = validation.get("value")
        try:
            choices = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError as exc:
            raise ShopifyApiError(message=f"Metafield definition has invalid choices: {raw!r}") from exc
        if not isinstance(choices, list) or not all(isinstance(choice, str) for choice in choices):
            raise ShopifyApiError(message=f"Metafield definition has invalid choices: {raw!r}")
        return choices
    return []


def _format_user_errors(user_errors: list[dict[str, Any]]) -> str:
    return "; ".join(str(error.get("message")) for error in user_errors)


class ShopifyApiClient:
    def __init__(self) -> None:
        self._timeout = settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS

    async def exchange_code_for_access_token(self, *, shop_domain: str, code: str) -> tuple[str, str]:
        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "client_secret": settings.SHOPIFY_APP_API_SECRET,
            "code": code,
        }
        response = await self._post_json(url=url, payload=payload)
        access_token = response.get("access_token")
        scopes = response.get("scope")
        if not isinstance(access_token, str) or not access_token:
            raise ShopifyApiError(message="OAuth token exchange response is missing access_token")
        if not isinstance(scopes, str):
            raise ShopifyApiError(message="OAuth token exchange response is missing scope")
        return access_token, scopes

    async def register_webhook(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str:
        query = """
        mutation webhookSubscriptionCreate(
            $topic: WebhookSubscriptionTopic!
            $webhookSubscription: WebhookSubscriptionInput!
        ) {
            webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
                webhookSubscription {
                    id
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        payload = {
            "query": query,
            "variables": {
                "topic": topic,
                "webhookSubscription": {"callbackUrl": callback_url, "format": "JSON"},
            },
        }
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload=payload,
        )
        create_data = response.get("webhookSubscriptionCreate") or {}
        user_errors = create_data.get("userErrors") or []
        if user_errors:
            if any("already been taken" in str(error.get("message", "")).lower() for error in user_errors):
                existing_id = await self._find_existing_http_webhook_id(
                    shop_domain=shop_domain,
                    access_token=access_token,
                    topic=topic,
                    callback_url=callback_url,
                )
                if existing_id:
                    return existing_id
            raise ShopifyApiError(
                message=f"Webhook registration failed for {topic}: {_format_user_errors(user_errors)}"
            )
        webhook_id = (create_data.get("webhookSubscription") or {}).get("id")
        if not isinstance(webhook_id, str) or not webhook_id:
            raise ShopifyApiError(message=f"Webhook registration for {topic} returned no id")
        return webhook_id

    async def _find_existing_http_webhook_id(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str | None:
        query = """
        query webhookSubscriptionsByTopic($topics: [WebhookSubscriptionTopic!]) {
            webhookSubscriptions(first: 50, topics: $topics) {
                nodes {
                    id
                    endpoint {
                        __typename
                        ... on WebhookHttpEndpoint {
                            callbackUrl
                        }
                    }
                }
            }
        }
        """
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={"query": query, "variables": {"topics": [topic]}},
        )
        target_url = callback_url.rstrip("/")
        for node in (response.get("webhookSubscriptions") or {}).get("nodes") or []:
            endpoint = node.get("endpoint") or {}
            if endpoint.get("__typename") != "WebhookHttpEndpoint":
                continue
            endpoint_callback = endpoint.get("callbackUrl")
            if isinstance(endpoint_callback, str) and endpoint_callback.rstrip("/") == target_url:
                webhook_id = node.get("id")
                if isinstance(webhook_id, str) and webhook_id:
                    return webhook_id
        return None

    async def list_metafield_definitions(
        self,
        *,
        shop_domain: str,
        access_token: str,
        namespace: str,
    ) -> list[dict[str, Any]]:
        """Product metafield definitions in ``namespace`` with their choice lists.

        Choices come from the definition's ``choices`` validation, in the order
        Shopify returns them. Definitions without one get an empty list.
        """
        graphql_query = """
        query productMetafieldDefinitions($namespace: String!, $first: Int!, $after: String) {
            metafieldDefinitions(ownerType: PRODUCT, namespace: $namespace, first: $first, after: $after) {
                pageInfo {
                    hasNextPage
                    endCursor
                }
                nodes {
                    name
                    namespace
                    key
                    validations {
                        name
                        value
                    }
                }
            }
        }
        """
        definitions: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            response = await self._admin_graphql(
                shop_domain=shop_domain,
                access_token=access_token,
                payload={
                    "query": graphql_query,
                    "variables": {"namespace": namespace, "first": _PAGE_SIZE, "after": cursor},
                },
            )
            connection = response.get("metafieldDefinitions")
            if not isinstance(connection, dict):
                raise ShopifyApiError(message="Metafield definitions response is invalid")

            for node in connection.get("nodes") or []:
                name = node.get("name") if isinstance(node, dict) else None
                if not isinstance(name, str) or not name:
                    raise ShopifyApiError(message="Metafield definition is missing name")
                definitions.append(
                    {
                        "name": name,
                        "namespace": node.get("namespace"),
                        "key": node.get("key"),
                        "choices": _parse_choices(node.get("validations")),
                    }
                )

            page_info = connection.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                return definitions

    async def get_product_variant_fields(
        self,
        *,
        shop_domain: str,
        access_token: str,
        product_gid: str,
        namespace: str,
    ) -> dict[str, Any]:
        cleaned_product_gid = _require_gid(product_gid, prefix=_PRODUCT_GID_PREFIX, label="productGid")
        graphql_query = """
        query productVariantFields($id: ID!, $namespace: String!) {
            product(id: $id) {
                id
                title
                collections(first: 1) {
                    nodes {
                        id
                        handle
                    }
                }
                metafields(namespace: $namespace, first: 50) {
                    nodes {
                        key
                        value
                    }
                }
            }
        }
        """
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={
                "query": graphql_query,
                "variables": {"id": cleaned_product_gid, "namespace": namespace},
            },
        )
        product = response.get("product")
        if not isinstance(product, dict):
            raise ShopifyApiError(message=f"Product not found for GID: {cleaned_product_gid}", status_code=404)

        collection_nodes = (product.get("collections") or {}).get("nodes") or []
        first_collection = collection_nodes[0] if collection_nodes and isinstance(collection_nodes[0], dict) else {}

        metafields: list[dict[str, str]] = []
        for node in (product.get("metafields") or {}).get("nodes") or []:
            if not isinstance(node, dict):
                continue
            key = node.get("key")
            value = node.get("value")
            if isinstance(key, str) and isinstance(value, str):
                metafields.append({"key": key, "value": value})

        return {
            "productGid": product.get("id") or cleaned_product_gid,
            "title": product.get("title"),
            "collectionGid": first_collection.get("id"),
            "collectionHandle": first_collection.get("handle"),
            "metafields": metafields,
        }

    async def has_matching_product_in_collection(
        self,
        *,
        shop_domain: str,
        access_token: str,
        search_query: str,
        collection_gid: str,
        exclude_product_gid: str,
    ) -> bool:
        """Whether a product other than ``exclude_product_gid`` matches the search in the collection."""
        if not search_query.strip():
            raise ShopifyApiError(message="Product search query cannot be empty.", status_code=400)
        cleaned_collection_gid = _require_gid(
            collection_gid, prefix=_COLLECTION_GID_PREFIX, label="collectionGid"
        )
        graphql_query = """
        query matchingProducts($query: String!, $collectionId: ID!, $first: Int!, $after: String) {
            products(first: $first, after: $after, query: $query) {
                pageInfo {
                    hasNextPage
                    endCursor
                }
                nodes {
                    id
                    inCollection(id: $collectionId)
                }
            }
        }
        """
        cursor: str | None = None
        while True:
            response = await self._admin_graphql(
                shop_domain=shop_domain,
                access_token=access_token,
                payload={
                    "query": graphql_query,
                    "variables": {
                        "query": search_query,
                        "collectionId": cleaned_collection_gid,
                        "first": _PAGE_SIZE,
                        "after": cursor,
                    },
                },
            )
            connection = response.get("products")
            if not isinstance(connection, dict):
                raise ShopifyApiError(message="Product search response is invalid")

            for node in connection.get("nodes") or []:
                if not isinstance(node, dict):
                    continue
                if node.get("id") != exclude_product_gid and node.get("inCollection") is True:
                    return True

            page_info = connection.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                return False

    async def get_product_metafield_value(
        self,
        *,
        shop_domain: str,
        access_token: str,
        product_gid: str,
        namespace: str,
        key: str,
    ) -> str | None:
        cleaned_product_gid = _require_gid(product_gid, prefix=_PRODUCT_GID_PREFIX, label="productGid")
        graphql_query = """
        query productMetafield($id: ID!, $namespace: String!, $key: String!) {
            product(id: $id) {
                id
                metafield(namespace: $namespace, key: $key) {
                    value
                }
            }
        }
        """
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={
                "query": graphql_query,
                "variables": {"id": cleaned_product_gid, "namespace": namespace, "key": key},
            },
        )
        product = response.get("product")
        if not isinstance(product, dict):
            raise ShopifyApiError(message=f"Product not found for GID: {cleaned_product_gid}", status_code=404)
        metafield = product.get("metafield")
        if not isinstance(metafield, dict):
            return None
        value = metafield.get("value")
        return value if isinstance(value, str) else None

    async def set_metafields(
        self,
        *,
        shop_domain: str,
        access_token: str,
        metafields: list[dict[str, str]],
    ) -> list[dict[str, Any]]:
        """Run one ``metafieldsSet`` batch and return its user errors (empty on success)."""
        if not metafields:
            raise ShopifyApiError(message="metafieldsSet requires at least one metafield.", status_code=400)
        query = """
        mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
            metafieldsSet(metafields: $metafields) {
                metafields {
                    key
                    namespace
                    value
                }
                userErrors {
                    field
                    message
                    code
                }
            }
        }
        """
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={"query": query, "variables": {"metafields": metafields}},
        )
        set_data = response.get("metafieldsSet")
        if not isinstance(set_data, dict):
            raise ShopifyApiError(message="metafieldsSet response is invalid")
        return list(set_data.get("userErrors") or [])

    async def delete_metafields(
        self,
        *,
        shop_domain: str,
        access_token: str,
        identifiers: list[dict[str, str]],
    ) -> dict[str, list[dict[str, Any]]]:
        query = """
        mutation metafieldsDelete($metafields: [MetafieldIdentifierInput!]!) {
            metafieldsDelete(metafields: $metafields) {
                deletedMetafields {
                    key
                    namespace
                    ownerId
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        response = await self._admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            payload={"query": query, "variables": {"metafields": identifiers}},
        )
        delete_data = response.get("metafieldsDelete")
        if not isinstance(delete_data, dict):
            raise ShopifyApiError(message="metafieldsDelete response is invalid")
        # Shopify reports identifiers that had nothing to delete as null entries.
        deleted = [item for item in delete_data.get("deletedMetafields") or [] if isinstance(item, dict)]
        return {"deleted": deleted, "userErrors": list(delete_data.get("userErrors") or [])}

    async def _admin_graphql(
        self,
        *,
        shop_domain: str,
        access_token: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        url = f"https://{shop_domain}/admin/api/{settings.SHOPIFY_ADMIN_API_VERSION}/graphql.json"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        response = await self._post_json(url=url, payload=payload, headers=headers)
        data = response.get("data")
        errors = response.get("errors")
        if errors:
            logger.warning("Admin GraphQL returned errors", extra={"shop_domain": shop_domain, "errors": errors})
            raise ShopifyApiError(message=f"Admin GraphQL errors: {errors}")
        if not isinstance(data, dict):
            raise ShopifyApiError(message="Admin GraphQL response is missing data")
        return data

    async def _post_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise ShopifyApiError(message=f"Network error while calling Shopify: {exc}") from exc

        if response.status_code >= 400:
            raise ShopifyApiError(
                message=f"Shopify API call failed ({response.status_code}): {response.text}",
                status_code=502,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyApiError(message="Shopify API returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message="Shopify API response must be a JSON object")
        return body
