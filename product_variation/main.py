from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlencode
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from product_variation.config import settings
from product_variation.db import find_active_installation, find_installation, get_session, init_db
from product_variation.metafield_rules import (
    COLLECTION_RULES,
    METAFIELD_KEY_BY_LABEL,
    VARIANT_FIELD_LABELS,
    UnsupportedCollectionError,
    is_supported_collection,
    metafield_key_for_label,
)
from product_variation.models import OAuthState, ProductWebhookDelivery, ShopInstallation
from product_variation.product_description import (
    DescriptionFormatError,
    build_description,
    parse_description,
)
from product_variation.schemas import (
    AppInfoResponse,
    CollectionSchemaResponse,
    ProductBlockResponse,
    ProductDescriptionResponse,
    ProductVariantResponse,
    SaveVariantRequest,
    SaveVariantResponse,
    UpdateProductDescriptionRequest,
    UpdateProductDescriptionResponse,
    VariantField,
)
from product_variation.security import (
    normalize_shop_domain,
    require_shop_session,
    verify_oauth_hmac,
    verify_webhook_hmac,
)
from product_variation.shopify_api import ShopifyApiClient, ShopifyApiError
from product_variation.variant_service import (
    CollectionSchema,
    ProductAssignment,
    SaveResult,
    VariantUpsertService,
)

logger = logging.getLogger(__name__)

PRODUCTS_CREATE_TOPIC = "PRODUCTS_CREATE"
_PRODUCT_GID_PREFIX = "gid://shopify/Product/"

_SAVE_STATUS_CODES: dict[str, int] = {
    "succeeded": status.HTTP_200_OK,
    "validation_failed": status.HTTP_400_BAD_REQUEST,
    "duplicate_found": status.HTTP_409_CONFLICT,
    "write_failed": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "upstream_unavailable": status.HTTP_502_BAD_GATEWAY,
    "unsupported_collection": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@asynccontextmanager
async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
    init_db()
    yield


app = FastAPI(
    title="Product Variation App",
    default_response_class=ORJSONResponse,
    lifespan=_app_lifespan,
)
shopify_api = ShopifyApiClient()


@app.exception_handler(Exception)
async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
    logger.exception("Unhandled server exception", exc_info=exc)
    return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@app.get("/app", response_model=AppInfoResponse)
def app_index() -> AppInfoResponse:
    return AppInfoResponse(
        title="Welcome to Product Variation App",
        description=(
            "Assign Group Name, Style, Metal and Shape metafields to products based on their "
            "collection, without creating duplicate variations."
        ),
        supportedCollections=list(COLLECTION_RULES),
        fieldLabels=list(VARIANT_FIELD_LABELS),
    )


def _build_shopify_oauth_url(*, shop_domain: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "scope": settings.admin_scopes_csv,
            "redirect_uri": f"{settings.app_base_url}/auth/callback",
            "state": state,
        }
    )
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


async def _register_required_webhooks(*, shop_domain: str, admin_access_token: str) -> None:
    webhooks = [
        ("APP_UNINSTALLED", f"{settings.app_base_url}/webhooks/app/uninstalled"),
        (PRODUCTS_CREATE_TOPIC, f"{settings.app_base_url}/webhooks/products/create"),
    ]
    for topic, callback_url in webhooks:
        await shopify_api.register_webhook(
            shop_domain=shop_domain,
            access_token=admin_access_token,
            topic=topic,
            callback_url=callback_url,
        )


@app.get("/auth/install")
def auth_install(shop: str, session: Session = Depends(get_session)):
    shop_domain = normalize_shop_domain(shop)
    state = uuid4().hex
    session.add(OAuthState(state=state, shop_domain=shop_domain))
    session.commit()
    return RedirectResponse(url=_build_shopify_oauth_url(shop_domain=shop_domain, state=state), status_code=302)


@app.get("/auth/callback")
async def auth_callback(request: Request, session: Session = Depends(get_session)):
    if not verify_oauth_hmac(list(request.query_params.multi_items())):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth HMAC")

    shop = request.query_params.get("shop")
    code = request.query_params.get("code")
    state_value = request.query_params.get("state")
    if not shop or not code or not state_value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth callback params: shop, code, state",
        )

    shop_domain = normalize_shop_domain(shop)
    oauth_state = session.get(OAuthState, state_value)
    if not oauth_state or oauth_state.shop_domain != shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")
    if oauth_state.is_expired(ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS):
        session.delete(oauth_state)
        session.commit()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expired OAuth state")

    try:
        admin_access_token, scopes_csv = await shopify_api.exchange_code_for_access_token(
            shop_domain=shop_domain,
            code=code,
        )
        installation = find_installation(session, shop_domain)
        if installation is None:
            installation = ShopInstallation(
                shop_domain=shop_domain,
                admin_access_token=admin_access_token,
                scopes=scopes_csv,
            )
            session.add(installation)
        else:
            installation.admin_access_token = admin_access_token
            installation.scopes = scopes_csv
            installation.uninstalled_at = None
            installation.updated_at = datetime.now(timezone.utc)

        await _register_required_webhooks(shop_domain=shop_domain, admin_access_token=admin_access_token)
        session.delete(oauth_state)
        session.commit()
    except ShopifyApiError as exc:
        session.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    logger.info("Shop installed", extra={"shop_domain": shop_domain})
    return {"ok": True, "shopDomain": shop_domain, "scopes": installation.scope_list}


def _resolve_active_installation(*, shop_domain: str, session: Session) -> ShopInstallation:
    installation = find_active_installation(session, shop_domain)
    if not installation or not installation.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active Shopify installation found for shopDomain={shop_domain}",
        )
    return installation


def _variant_service(installation: ShopInstallation) -> VariantUpsertService:
    return VariantUpsertService(
        api=shopify_api,
        shop_domain=installation.shop_domain,
        access_token=installation.admin_access_token,
    )


def _product_gid(product_id: str) -> str:
    cleaned = product_id.strip()
    if cleaned.isdigit():
        return f"{_PRODUCT_GID_PREFIX}{cleaned}"
    if cleaned.startswith(_PRODUCT_GID_PREFIX) and cleaned[len(_PRODUCT_GID_PREFIX):].isdigit():
        return cleaned
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="product_id must be a numeric Shopify product id or a Product GID",
    )


def _variant_fields(schema: CollectionSchema, values: dict[str, str] | None = None) -> list[VariantField]:
    values = values or {}
    return [
        VariantField(
            label=label,
            key=metafield_key_for_label(label),
            choices=list(schema.choices_by_field.get(label, ())),
            value=values.get(label),
        )
        for label in schema.required_fields
    ]


@app.get("/v1/products/{product_id}/block", response_model=ProductBlockResponse)
async def product_block(
    product_id: str,
    shop_domain: str = Depends(require_shop_session),
    session: Session = Depends(get_session),
):
    product_gid = _product_gid(product_id)
    installation = _resolve_active_installation(shop_domain=shop_domain, session=session)
    try:
        snapshot = await _variant_service(installation).read_product(product_gid)
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    if is_supported_collection(snapshot.collection_handle):
        return ProductBlockResponse(
            productGid=snapshot.product_gid,
            collectionHandle=snapshot.collection_handle,
            supported=True,
            editPath=f"/app/product-variant/{product_gid.rsplit('/', 1)[-1]}",
        )
    return ProductBlockResponse(
        productGid=snapshot.product_gid,
        collectionHandle=snapshot.collection_handle,
        supported=False,
        bannerTitle="Unsupported Collection",
        bannerMessage=str(UnsupportedCollectionError(snapshot.collection_handle)),
    )


@app.get("/v1/collections/{collection_handle}/schema", response_model=CollectionSchemaResponse)
async def collection_schema(
    collection_handle: str,
    shop_domain: str = Depends(require_shop_session),
    session: Session = Depends(get_session),
):
    installation = _resolve_active_installation(shop_domain=shop_domain, session=session)
    try:
        schema = await _variant_service(installation).load_schema(collection_handle)
    except UnsupportedCollectionError as exc:
        return CollectionSchemaResponse(collectionHandle=collection_handle, supported=False, message=str(exc))
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    return CollectionSchemaResponse(
        collectionHandle=collection_handle,
        supported=True,
        fields=_variant_fields(schema),
    )


@app.get("/v1/products/{product_id}/variant", response_model=ProductVariantResponse)
async def get_product_variant(
    product_id: str,
    shop_domain: str = Depends(require_shop_session),
    session: Session = Depends(get_session),
):
    product_gid = _product_gid(product_id)
    installation = _resolve_active_installation(shop_domain=shop_domain, session=session)
    service = _variant_service(installation)
    try:
        snapshot = await service.read_product(product_gid)
        schema = await service.load_schema(snapshot.collection_handle or "")
    except UnsupportedCollectionError as exc:
        return ProductVariantResponse(
            productGid=snapshot.product_gid,
            title=snapshot.title,
            collectionHandle=snapshot.collection_handle,
            collectionGid=snapshot.collection_gid,
            supported=False,
            message=str(exc),
        )
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    return ProductVariantResponse(
        productGid=snapshot.product_gid,
        title=snapshot.title,
        collectionHandle=snapshot.collection_handle,
        collectionGid=snapshot.collection_gid,
        supported=True,
        fields=_variant_fields(schema, dict(snapshot.values)),
    )


def _save_response(product_gid: str, result: SaveResult) -> ORJSONResponse:
    body = SaveVariantResponse(
        productGid=product_gid,
        status=result.status,
        messages=list(result.messages),
        missingFields=list(result.missing_fields),
        values=dict(result.values),
    )
    return ORJSONResponse(status_code=_SAVE_STATUS_CODES[result.status], content=body.model_dump())


@app.post("/v1/products/{product_id}/variant", response_model=SaveVariantResponse)
async def save_product_variant(
    product_id: str,
    payload: SaveVariantRequest,
    shop_domain: str = Depends(require_shop_session),
    session: Session = Depends(get_session),
):
    product_gid = _product_gid(product_id)
    installation = _resolve_active_installation(shop_domain=shop_domain, session=session)
    service = _variant_service(installation)

    try:
        snapshot = await service.read_product(product_gid)
    except ShopifyApiError as exc:
        if exc.status_code != status.HTTP_502_BAD_GATEWAY:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        return _save_response(product_gid, SaveResult(status="upstream_unavailable", messages=(str(exc),)))

    if not is_supported_collection(snapshot.collection_handle) or not snapshot.collection_gid:
        error = UnsupportedCollectionError(snapshot.collection_handle)
        return _save_response(product_gid, SaveResult(status="unsupported_collection", messages=(str(error),)))

    result = await service.save_assignment(
        ProductAssignment(
            product_gid=snapshot.product_gid,
            collection_handle=snapshot.collection_handle,
            collection_gid=snapshot.collection_gid,
            values=payload.values,
        )
    )
    return _save_response(snapshot.product_gid, result)


@app.get("/v1/products/{product_id}/description", response_model=ProductDescriptionResponse)
async def get_product_description(
    product_id: str,
    shop_domain: str = Depends(require_shop_session),
    session: Session = Depends(get_session),
):
    product_gid = _product_gid(product_id)
    installation = _resolve_active_installation(shop_domain=shop_domain, session=session)
    try:
        raw = await shopify_api.get_product_metafield_value(
            shop_domain=installation.shop_domain,
            access_token=installation.admin_access_token,
            product_gid=product_gid,
            namespace=settings.DESCRIPTION_METAFIELD_NAMESPACE,
            key=settings.DESCRIPTION_METAFIELD_KEY,
        )
        groups = parse_description(raw)
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except DescriptionFormatError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return ProductDescriptionResponse(productGid=product_gid, groups=groups)


@app.put("/v1/products/{product_id}/description", response_model=UpdateProductDescriptionResponse)
async def update_product_description(
    product_id: str,
    payload: UpdateProductDescriptionRequest,
    shop_domain: str = Depends(require_shop_session),
    session: Session = Depends(get_session),
):
    product_gid = _product_gid(product_id)
    installation = _resolve_active_installation(shop_domain=shop_domain, session=session)
    try:
        description = build_description(payload.groups)
    except DescriptionFormatError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        user_errors = await shopify_api.set_metafields(
            shop_domain=installation.shop_domain,
            access_token=installation.admin_access_token,
            metafields=[
                {
                    "ownerId": product_gid,
                    "namespace": settings.DESCRIPTION_METAFIELD_NAMESPACE,
                    "key": settings.DESCRIPTION_METAFIELD_KEY,
                    "type": "json",
                    "value": json.dumps(description),
                }
            ],
        )
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    if user_errors:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=", ".join(str(error.get("message")) for error in user_errors),
        )
    return UpdateProductDescriptionResponse(
        productGid=product_gid,
        message="Product description saved successfully.",
    )


async def _verified_webhook_shop(request: Request) -> str:
    body = await request.body()
    if not verify_webhook_hmac(body=body, supplied_hmac=request.headers.get("x-shopify-hmac-sha256")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook HMAC")
    shop_header = request.headers.get("x-shopify-shop-domain")
    if not shop_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing x-shopify-shop-domain header",
        )
    return normalize_shop_domain(shop_header)


def _record_webhook_delivery(
    session: Session,
    *,
    shop_domain: str,
    event_id: str,
    outcome: str,
    product_gid: str | None = None,
    cleared_count: int = 0,
) -> None:
    session.add(
        ProductWebhookDelivery(
            shop_domain=shop_domain,
            topic=PRODUCTS_CREATE_TOPIC,
            event_id=event_id,
            product_gid=product_gid,
            outcome=outcome,
            cleared_count=cleared_count,
        )
    )
    session.commit()


@app.post("/webhooks/products/create")
async def products_create_webhook(request: Request, session: Session = Depends(get_session)):
    shop_domain = await _verified_webhook_shop(request)
    event_id = request.headers.get("x-shopify-event-id")
    if not event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing x-shopify-event-id header",
        )

    existing = session.scalars(
        select(ProductWebhookDelivery).where(
            ProductWebhookDelivery.shop_domain == shop_domain,
            ProductWebhookDelivery.topic == PRODUCTS_CREATE_TOPIC,
            ProductWebhookDelivery.event_id == event_id,
        )
    ).first()
    if existing:
        return {"received": True, "duplicate": True}

    try:
        payload: Any = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    product_gid = payload.get("admin_graphql_api_id") if isinstance(payload, dict) else None
    if not isinstance(product_gid, str) or not product_gid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload: Missing product ID",
        )

    installation = find_active_installation(session, shop_domain)
    if not installation or not installation.is_active:
        _record_webhook_delivery(
            session,
            shop_domain=shop_domain,
            event_id=event_id,
            outcome="ignored_not_installed",
            product_gid=product_gid,
        )
        return {"received": True, "ignored": True, "reason": "Shop has no active installation"}

    try:
        system_source = await shopify_api.get_product_metafield_value(
            shop_domain=shop_domain,
            access_token=installation.admin_access_token,
            product_gid=product_gid,
            namespace=settings.VARIANT_METAFIELD_NAMESPACE,
            key=settings.SYSTEM_SOURCE_METAFIELD_KEY,
        )
        if system_source == settings.SYSTEM_SOURCE_SKIP_VALUE:
            logger.info(
                "Skipping metafield clearing for product managed by system source",
                extra={"shop_domain": shop_domain, "product_gid": product_gid, "system_source": system_source},
            )
            _record_webhook_delivery(
                session,
                shop_domain=shop_domain,
                event_id=event_id,
                outcome="skipped",
                product_gid=product_gid,
            )
            return {"received": True, "skipped": True, "reason": f"Product managed by {system_source}"}

        result = await shopify_api.delete_metafields(
            shop_domain=shop_domain,
            access_token=installation.admin_access_token,
            identifiers=[
                {
                    "ownerId": product_gid,
                    "namespace": settings.VARIANT_METAFIELD_NAMESPACE,
                    "key": key,
                }
                for key in METAFIELD_KEY_BY_LABEL.values()
            ],
        )
    except ShopifyApiError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    if result["userErrors"]:
        logger.error(
            "Metafield deletion errors",
            extra={"shop_domain": shop_domain, "product_gid": product_gid, "errors": result["userErrors"]},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Metafields delete encountered errors",
        )

    cleared_count = len(result["deleted"])
    _record_webhook_delivery(
        session,
        shop_domain=shop_domain,
        event_id=event_id,
        outcome="cleared",
        product_gid=product_gid,
        cleared_count=cleared_count,
    )
    return {"received": True, "cleared": cleared_count}


@app.post("/webhooks/app/uninstalled")
async def app_uninstalled_webhook(request: Request, session: Session = Depends(get_session)):
    shop_domain = await _verified_webhook_shop(request)
    installation = find_installation(session, shop_domain)
    if installation:
        installation.uninstalled_at = datetime.now(timezone.utc)
        installation.admin_access_token = ""
        installation.updated_at = datetime.now(timezone.utc)
        session.add(installation)
        session.commit()
        logger.info("Shop uninstalled", extra={"shop_domain": shop_domain})
    return {"received": True}
