from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import delete, select

import product_variation.main as main_module
from product_variation.config import settings
from product_variation.db import SessionLocal, init_db
from product_variation.models import OAuthState, ProductWebhookDelivery, ShopInstallation
from product_variation.security import sign_webhook_body
from product_variation.shopify_api import ShopifyApiError

SHOP = "example.myshopify.com"
PRODUCT_GID = "gid://shopify/Product/1001"
WEDDING_GID = "gid://shopify/Collection/100"


def _session_headers(shop: str = SHOP) -> dict[str, str]:
    now = int(time.time())
    token = jwt.encode(
        {
            "iss": f"https://{shop}/admin",
            "dest": f"https://{shop}",
            "aud": settings.SHOPIFY_APP_API_KEY,
            "sub": "1",
            "exp": now + 60,
            "nbf": now - 5,
        },
        settings.SHOPIFY_APP_API_SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def _webhook_headers(body: bytes, *, event_id: str = "event-1", shop: str = SHOP) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "x-shopify-hmac-sha256": sign_webhook_body(body),
        "x-shopify-shop-domain": shop,
        "x-shopify-event-id": event_id,
    }


def _build_oauth_callback_params(*, shop: str, code: str, state: str) -> dict[str, str]:
    items = [("code", code), ("shop", shop), ("state", state)]
    message = "&".join(f"{key}={value}" for key, value in sorted(items, key=lambda item: item[0]))
    digest = hmac.new(
        settings.SHOPIFY_APP_API_SECRET.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return {"shop": shop, "code": code, "state": state, "hmac": digest}


def _product_fields(*, handle: str | None = "wedding-rings", collection_gid: str | None = WEDDING_GID, metafields=None):
    async def fake_get_product_variant_fields(*, shop_domain: str, access_token: str, product_gid: str, namespace: str):
        assert shop_domain == SHOP
        assert access_token == "admin_access_token"
        assert namespace == "custom"
        return {
            "productGid": product_gid,
            "title": "Classic Band",
            "collectionGid": collection_gid,
            "collectionHandle": handle,
            "metafields": metafields or [],
        }

    return fake_get_product_variant_fields


@pytest.fixture()
def db_session():
    init_db()
    session = SessionLocal()

    def _clear() -> None:
        session.execute(delete(ProductWebhookDelivery))
        session.execute(delete(OAuthState))
        session.execute(delete(ShopInstallation))
        session.commit()

    _clear()
    try:
        yield session
    finally:
        _clear()
        session.close()


@pytest.fixture()
def installation(db_session):
    record = ShopInstallation(
        shop_domain=SHOP,
        admin_access_token="admin_access_token",
        scopes="read_products,write_products",
    )
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture()
def api_client():
    with TestClient(main_module.app) as client:
        yield client


def test_app_index_lists_supported_collections(api_client):
    response = api_client.get("/app")

    assert response.status_code == 200
    payload = response.json()
    assert payload["supportedCollections"] == ["engagement-rings", "wedding-rings"]
    assert payload["fieldLabels"] == ["Group Name", "Style", "Metal", "Shape"]


def test_auth_callback_stores_installation_and_registers_webhooks(api_client, db_session, monkeypatch):
    db_session.add(OAuthState(state="state_1", shop_domain=SHOP))
    db_session.commit()
    registered: list[str] = []

    async def fake_exchange_code_for_access_token(*, shop_domain: str, code: str):
        assert code == "oauth_code"
        return "admin_access_token", "read_products,write_products"

    async def fake_register_webhook(*, shop_domain: str, access_token: str, topic: str, callback_url: str):
        registered.append(topic)
        return f"gid://shopify/WebhookSubscription/{len(registered)}"

    monkeypatch.setattr(main_module.shopify_api, "exchange_code_for_access_token", fake_exchange_code_for_access_token)
    monkeypatch.setattr(main_module.shopify_api, "register_webhook", fake_register_webhook)

    response = api_client.get(
        "/auth/callback",
        params=_build_oauth_callback_params(shop=SHOP, code="oauth_code", state="state_1"),
    )

    assert response.status_code == 200
    assert response.json()["scopes"] == ["read_products", "write_products"]
    assert registered == ["APP_UNINSTALLED", "PRODUCTS_CREATE"]
    stored = db_session.scalars(select(ShopInstallation).where(ShopInstallation.shop_domain == SHOP)).first()
    assert stored is not None
    assert stored.admin_access_token == "admin_access_token"
    assert db_session.get(OAuthState, "state_1") is None


def test_auth_callback_rejects_expired_state(api_client, db_session, monkeypatch):
    db_session.add(
        OAuthState(
            state="state_old",
            shop_domain=SHOP,
            created_at=datetime.now(timezone.utc) - timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS + 60),
        )
    )
    db_session.commit()

    async def fail_exchange_code_for_access_token(**kwargs):
        raise AssertionError("expired states must not reach the token exchange")

    monkeypatch.setattr(main_module.shopify_api, "exchange_code_for_access_token", fail_exchange_code_for_access_token)

    response = api_client.get(
        "/auth/callback",
        params=_build_oauth_callback_params(shop=SHOP, code="oauth_code", state="state_old"),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Expired OAuth state"


def test_auth_callback_rejects_bad_hmac(api_client, db_session):
    params = _build_oauth_callback_params(shop=SHOP, code="oauth_code", state="state_1")
    params["hmac"] = "forged"

    response = api_client.get("/auth/callback", params=params)

    assert response.status_code == 400


def test_admin_routes_require_session_token(api_client, installation):
    response = api_client.get("/v1/products/1001/variant")

    assert response.status_code == 401


def test_admin_routes_require_active_installation(api_client, db_session):
    response = api_client.get("/v1/products/1001/variant", headers=_session_headers())

    assert response.status_code == 404


def test_product_block_for_supported_collection(api_client, installation, monkeypatch):
    monkeypatch.setattr(main_module.shopify_api, "get_product_variant_fields", _product_fields())

    response = api_client.get("/v1/products/1001/block", headers=_session_headers())

    assert response.status_code == 200
    payload = response.json()
    assert payload["supported"] is True
    assert payload["editPath"] == "/app/product-variant/1001"


def test_product_block_for_unsupported_collection(api_client, installation, monkeypatch):
    monkeypatch.setattr(main_module.shopify_api, "get_product_variant_fields", _product_fields(handle="necklaces"))

    response = api_client.get("/v1/products/1001/block", headers=_session_headers())

    assert response.status_code == 200
    payload = response.json()
    assert payload["supported"] is False
    assert payload["bannerTitle"] == "Unsupported Collection"
    assert payload["editPath"] is None


def test_collection_schema_for_unsupported_handle(api_client, installation, monkeypatch):
    async def fail_list_metafield_definitions(**kwargs):
        raise AssertionError("definitions must not be fetched for an unsupported collection")

    monkeypatch.setattr(main_module.shopify_api, "list_metafield_definitions", fail_list_metafield_definitions)

    response = api_client.get("/v1/collections/necklaces/schema", headers=_session_headers())

    assert response.status_code == 200
    assert response.json()["supported"] is False


def test_get_product_variant_returns_fields_choices_and_values(api_client, installation, monkeypatch):
    async def fake_list_metafield_definitions(*, shop_domain: str, access_token: str, namespace: str):
        return [{"name": "Metal", "namespace": "custom", "key": "metal", "choices": ["Gold", "Platinum"]}]

    monkeypatch.setattr(
        main_module.shopify_api,
        "get_product_variant_fields",
        _product_fields(metafields=[{"key": "metal", "value": "Gold"}, {"key": "shape", "value": "Oval"}]),
    )
    monkeypatch.setattr(main_module.shopify_api, "list_metafield_definitions", fake_list_metafield_definitions)

    response = api_client.get("/v1/products/1001/variant", headers=_session_headers())

    assert response.status_code == 200
    payload = response.json()
    assert payload["supported"] is True
    assert payload["collectionHandle"] == "wedding-rings"
    assert payload["fields"] == [
        {"label": "Group Name", "key": "group_name", "choices": [], "value": None},
        {"label": "Style", "key": "style", "choices": [], "value": None},
        {"label": "Metal", "key": "metal", "choices": ["Gold", "Platinum"], "value": "Gold"},
    ]


def test_save_product_variant_succeeds(api_client, installation, monkeypatch):
    written: list[list[dict]] = []

    async def fake_has_matching_product_in_collection(**kwargs):
        assert kwargs["collection_gid"] == WEDDING_GID
        assert kwargs["exclude_product_gid"] == PRODUCT_GID
        return False

    async def fake_set_metafields(*, shop_domain: str, access_token: str, metafields: list[dict]):
        written.append(metafields)
        return []

    monkeypatch.setattr(main_module.shopify_api, "get_product_variant_fields", _product_fields())
    monkeypatch.setattr(
        main_module.shopify_api, "has_matching_product_in_collection", fake_has_matching_product_in_collection
    )
    monkeypatch.setattr(main_module.shopify_api, "set_metafields", fake_set_metafields)

    response = api_client.post(
        "/v1/products/1001/variant",
        headers=_session_headers(),
        json={"values": {"Group Name": " Classic ", "Style": "Solitaire", "Metal": "Gold"}},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "succeeded"
    assert payload["values"] == {"Group Name": "Classic", "Style": "Solitaire", "Metal": "Gold"}
    assert [(item["key"], item["value"]) for item in written[0]] == [
        ("group_name", "Classic"),
        ("style", "Solitaire"),
        ("metal", "Gold"),
    ]


def test_save_product_variant_reports_missing_fields(api_client, installation, monkeypatch):
    monkeypatch.setattr(main_module.shopify_api, "get_product_variant_fields", _product_fields())

    response = api_client.post(
        "/v1/products/1001/variant",
        headers=_session_headers(),
        json={"values": {"Style": "Solitaire"}},
    )

    assert response.status_code == 400
    payload = response.json()
    assert payload["status"] == "validation_failed"
    assert payload["missingFields"] == ["Group Name", "Metal"]


def test_save_product_variant_duplicate_is_conflict(api_client, installation, monkeypatch):
    async def fake_has_matching_product_in_collection(**kwargs):
        return True

    async def fail_set_metafields(**kwargs):
        raise AssertionError("duplicates must not be written")

    monkeypatch.setattr(main_module.shopify_api, "get_product_variant_fields", _product_fields())
    monkeypatch.setattr(
        main_module.shopify_api, "has_matching_product_in_collection", fake_has_matching_product_in_collection
    )
    monkeypatch.setattr(main_module.shopify_api, "set_metafields", fail_set_metafields)

    response = api_client.post(
        "/v1/products/1001/variant",
        headers=_session_headers(),
        json={"values": {"Group Name": "Classic", "Style": "Solitaire", "Metal": "Gold"}},
    )

    assert response.status_code == 409
    assert response.json()["status"] == "duplicate_found"


def test_save_product_variant_upstream_failure(api_client, installation, monkeypatch):
    async def failing_get_product_variant_fields(**kwargs):
        raise ShopifyApiError(message="Network error while calling Shopify: timed out")

    monkeypatch.setattr(main_module.shopify_api, "get_product_variant_fields", failing_get_product_variant_fields)

    response = api_client.post(
        "/v1/products/1001/variant",
        headers=_session_headers(),
        json={"values": {"Group Name": "Classic"}},
    )

    assert response.status_code == 502
    assert response.json()["status"] == "upstream_unavailable"


def test_save_product_variant_unsupported_collection(api_client, installation, monkeypatch):
    monkeypatch.setattr(
        main_module.shopify_api,
        "get_product_variant_fields",
        _product_fields(handle=None, collection_gid=None),
    )

    response = api_client.post(
        "/v1/products/1001/variant",
        headers=_session_headers(),
        json={"values": {"Group Name": "Classic"}},
    )

    assert response.status_code == 422
    assert response.json()["status"] == "unsupported_collection"


def test_invalid_product_id_is_rejected(api_client, installation):
    response = api_client.get("/v1/products/not-a-product/variant", headers=_session_headers())

    assert response.status_code == 400


def test_get_product_description_groups(api_client, installation, monkeypatch):
    async def fake_get_product_metafield_value(**kwargs):
        assert kwargs["namespace"] == "productdata"
        assert kwargs["key"] == "product_description"
        return '{"Stone": {"Carat": "1.5"}}'

    monkeypatch.setattr(main_module.shopify_api, "get_product_metafield_value", fake_get_product_metafield_value)

    response = api_client.get("/v1/products/1001/description", headers=_session_headers())

    assert response.status_code == 200
    assert response.json()["groups"] == [{"groupName": "Stone", "fields": [{"key": "Carat", "value": "1.5"}]}]


def test_update_product_description_writes_json_metafield(api_client, installation, monkeypatch):
    written: list[dict] = []

    async def fake_set_metafields(*, shop_domain: str, access_token: str, metafields: list[dict]):
        written.extend(metafields)
        return []

    monkeypatch.setattr(main_module.shopify_api, "set_metafields", fake_set_metafields)

    response = api_client.put(
        "/v1/products/1001/description",
        headers=_session_headers(),
        json={"groups": [{"groupName": "Stone", "fields": [{"key": "Carat", "value": "1.5"}, {"key": "", "value": "x"}]}]},
    )

    assert response.status_code == 200
    assert written[0]["type"] == "json"
    assert written[0]["ownerId"] == PRODUCT_GID
    assert json.loads(written[0]["value"]) == {"Stone": {"Carat": "1.5"}}


def test_update_product_description_rejects_duplicate_groups(api_client, installation):
    response = api_client.put(
        "/v1/products/1001/description",
        headers=_session_headers(),
        json={"groups": [{"groupName": "Stone"}, {"groupName": "Stone"}]},
    )

    assert response.status_code == 400


def test_update_product_description_surfaces_user_errors(api_client, installation, monkeypatch):
    async def fake_set_metafields(**kwargs):
        return [{"field": ["metafields", "0"], "message": "Value is invalid JSON"}]

    monkeypatch.setattr(main_module.shopify_api, "set_metafields", fake_set_metafields)

    response = api_client.put(
        "/v1/products/1001/description",
        headers=_session_headers(),
        json={"groups": [{"groupName": "Stone"}]},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Value is invalid JSON"


def test_products_create_webhook_clears_variant_metafields(api_client, installation, db_session, monkeypatch):
    deleted_keys: list[str] = []

    async def fake_get_product_metafield_value(**kwargs):
        assert kwargs["key"] == "system_source"
        return None

    async def fake_delete_metafields(*, shop_domain: str, access_token: str, identifiers: list[dict]):
        deleted_keys.extend(item["key"] for item in identifiers)
        return {"deleted": identifiers, "userErrors": []}

    monkeypatch.setattr(main_module.shopify_api, "get_product_metafield_value", fake_get_product_metafield_value)
    monkeypatch.setattr(main_module.shopify_api, "delete_metafields", fake_delete_metafields)
    body = json.dumps({"admin_graphql_api_id": PRODUCT_GID}).encode("utf-8")

    response = api_client.post("/webhooks/products/create", content=body, headers=_webhook_headers(body))

    assert response.status_code == 200
    assert response.json() == {"received": True, "cleared": 4}
    assert deleted_keys == ["group_name", "style", "metal", "shape"]

    delivery = db_session.scalars(select(ProductWebhookDelivery)).one()
    assert delivery.outcome == "cleared"
    assert delivery.product_gid == PRODUCT_GID
    assert delivery.cleared_count == 4

    duplicate = api_client.post("/webhooks/products/create", content=body, headers=_webhook_headers(body))
    assert duplicate.json() == {"received": True, "duplicate": True}
    assert len(deleted_keys) == 4


def test_products_create_webhook_skips_node_admin_products(api_client, installation, monkeypatch):
    async def fake_get_product_metafield_value(**kwargs):
        return "node-admin"

    async def fail_delete_metafields(**kwargs):
        raise AssertionError("node-admin products must keep their metafields")

    monkeypatch.setattr(main_module.shopify_api, "get_product_metafield_value", fake_get_product_metafield_value)
    monkeypatch.setattr(main_module.shopify_api, "delete_metafields", fail_delete_metafields)
    body = json.dumps({"admin_graphql_api_id": PRODUCT_GID}).encode("utf-8")

    response = api_client.post("/webhooks/products/create", content=body, headers=_webhook_headers(body))

    assert response.status_code == 200
    assert response.json()["skipped"] is True


def test_products_create_webhook_reports_delete_errors(api_client, installation, monkeypatch):
    async def fake_get_product_metafield_value(**kwargs):
        return None

    async def fake_delete_metafields(**kwargs):
        return {"deleted": [], "userErrors": [{"field": ["metafields"], "message": "Access denied"}]}

    monkeypatch.setattr(main_module.shopify_api, "get_product_metafield_value", fake_get_product_metafield_value)
    monkeypatch.setattr(main_module.shopify_api, "delete_metafields", fake_delete_metafields)
    body = json.dumps({"admin_graphql_api_id": PRODUCT_GID}).encode("utf-8")

    response = api_client.post("/webhooks/products/create", content=body, headers=_webhook_headers(body))

    assert response.status_code == 500


def test_products_create_webhook_requires_product_id(api_client, installation):
    body = json.dumps({"id": 1001}).encode("utf-8")

    response = api_client.post("/webhooks/products/create", content=body, headers=_webhook_headers(body))

    assert response.status_code == 400


def test_products_create_webhook_rejects_bad_hmac(api_client, installation):
    body = json.dumps({"admin_graphql_api_id": PRODUCT_GID}).encode("utf-8")
    headers = _webhook_headers(body)
    headers["x-shopify-hmac-sha256"] = "forged"

    response = api_client.post("/webhooks/products/create", content=body, headers=headers)

    assert response.status_code == 401


def test_app_uninstalled_webhook_marks_installation(api_client, installation, db_session):
    body = b"{}"

    response = api_client.post("/webhooks/app/uninstalled", content=body, headers=_webhook_headers(body))

    assert response.status_code == 200
    db_session.expire_all()
    stored = db_session.scalars(select(ShopInstallation).where(ShopInstallation.shop_domain == SHOP)).first()
    assert stored.uninstalled_at is not None
    assert stored.admin_access_token == ""
