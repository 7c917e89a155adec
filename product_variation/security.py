from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
from collections.abc import Sequence
from typing import Any
from urllib.parse import urlparse

from fastapi import Header, HTTPException, status
from jose import jwt
from jose.exceptions import JWTError

from product_variation.config import settings

logger = logging.getLogger(__name__)

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


def normalize_shop_domain(shop: str) -> str:
    normalized = shop.strip().lower()
    if not _SHOP_DOMAIN_RE.fullmatch(normalized):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="shop must be a valid *.myshopify.com domain",
        )
    return normalized


def verify_oauth_hmac(query_items: Sequence[tuple[str, str]]) -> bool:
    supplied_hmac = None
    filtered: list[tuple[str, str]] = []
    for key, value in query_items:
        if key == "hmac":
            supplied_hmac = value
        elif key != "signature":
            filtered.append((key, value))

    if not supplied_hmac:
        return False

    message = "&".join(f"{key}={value}" for key, value in sorted(filtered, key=lambda item: item[0]))
    digest = hmac.new(
        settings.SHOPIFY_APP_API_SECRET.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(digest, supplied_hmac)


def sign_webhook_body(body: bytes) -> str:
    """Base64 HMAC-SHA256 of a webhook body, as sent in X-Shopify-Hmac-Sha256."""
    digest = hmac.new(settings.SHOPIFY_APP_API_SECRET.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_hmac(*, body: bytes, supplied_hmac: str | None) -> bool:
    if not supplied_hmac:
        return False
    return hmac.compare_digest(sign_webhook_body(body), supplied_hmac)


def _shop_from_claim_url(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    host = urlparse(value).hostname
    if not host or not _SHOP_DOMAIN_RE.fullmatch(host.lower()):
        return None
    return host.lower()


def decode_session_token(token: str) -> dict[str, Any]:
    """Verify an App Bridge session token and return its claims.

    Embedded admin pages and UI extensions sign these with the app secret
    (HS256). ``dest`` names the shop and ``iss`` must point at that shop's
    admin.
    """
    try:
        claims = jwt.decode(
            token,
            settings.SHOPIFY_APP_API_SECRET,
            algorithms=["HS256"],
            audience=settings.SHOPIFY_APP_API_KEY,
            options={"leeway": settings.SESSION_TOKEN_LEEWAY_SECONDS},
        )
    except JWTError as exc:
        logger.warning("Session token verification failed", exc_info=exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token") from exc

    dest_shop = _shop_from_claim_url(claims.get("dest"))
    issuer_shop = _shop_from_claim_url(claims.get("iss"))
    if not dest_shop or dest_shop != issuer_shop:
        logger.warning(
            "Session token shop mismatch",
            extra={"dest": claims.get("dest"), "iss": claims.get("iss")},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token")
    claims["shop"] = dest_shop
    return claims


def require_shop_session(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer authorization header",
        )
    claims = decode_session_token(authorization[7:].strip())
    return claims["shop"]
