"""
Catalog Client — product search over the external catalog API.

The client object owns its bearer token and expiry; there is no module-level
token state. Provider payloads are normalized into CandidateMatch here and
nowhere else.
"""
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from shelfmatch.config import (
    CATALOG_BASE_URL,
    CATALOG_RESULT_CAP,
    CATALOG_TIMEOUT_S,
    CATALOG_TOKEN_TTL_S,
    CATALOG_UPDATED_AT_FROM,
)
from shelfmatch.models.domain import UNKNOWN, CandidateMatch
from shelfmatch.services.errors import SearchError
from shelfmatch.services.similarity import retailers_from_urls

logger = logging.getLogger("shelfmatch-catalog")

AUTH_PATH = "/v1/auth/token"
SEARCH_PATH = "/v1/catalog/products/search/query"

HINT_ORDER = ("brand", "product_name", "flavor", "size")


@dataclass
class CatalogSearchResult:
    candidates: list[CandidateMatch] = field(default_factory=list)
    resolved_query: str = ""


def build_query(query: str, hints: Optional[dict] = None) -> str:
    """Brand + product name + flavor + size when any are known, else the plain query."""
    hints = hints or {}
    parts = []
    for name in HINT_ORDER:
        value = hints.get(name)
        if value and str(value).strip() and str(value).strip() != UNKNOWN:
            parts.append(str(value).strip())
    if parts:
        return " ".join(parts)
    return (query or "").strip()


def _front_image_url(images: Optional[list]) -> Optional[str]:
    """FRONT image first, else the first image carrying a desktop or mobile URL."""
    if not images:
        return None
    for img in images:
        if img.get("type") == "FRONT":
            urls = img.get("urls") or {}
            if urls.get("desktop") or urls.get("mobile"):
                return urls.get("desktop") or urls.get("mobile")
    for img in images:
        urls = img.get("urls") or {}
        if urls.get("desktop") or urls.get("mobile"):
            return urls.get("desktop") or urls.get("mobile")
    return None


def normalize_product(raw: dict[str, Any], rank: int = 0) -> CandidateMatch:
    """Map one provider product payload to the canonical CandidateMatch."""
    keys = raw.get("keys") or {}
    key = keys.get("GTIN14") or raw.get("key")
    if not key:
        raise ValueError("Catalog product has no key")
    category = raw.get("category")
    if isinstance(category, list):
        category = ", ".join(c for c in category if c) or None
    return CandidateMatch(
        key=str(key),
        title=raw.get("title") or "",
        brand=raw.get("companyBrand"),
        manufacturer=raw.get("companyManufacturer"),
        size=raw.get("measures"),
        category=category,
        image_url=_front_image_url(raw.get("images")),
        retailers=tuple(retailers_from_urls(raw.get("sourcePdpUrls"))),
        rank=rank,
    )


class CatalogClient:
    """Bearer-token client; refreshes the token when expired or rejected."""

    def __init__(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        base_url: str = CATALOG_BASE_URL,
        timeout: float = CATALOG_TIMEOUT_S,
        result_cap: int = CATALOG_RESULT_CAP,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.email = email if email is not None else os.getenv("CATALOG_EMAIL", "")
        self.password = password if password is not None else os.getenv("CATALOG_PASSWORD", "")
        self.result_cap = result_cap
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None
        self._token: Optional[str] = None
        self._token_expiry: float = 0.0

    async def _authenticate(self, force: bool = False) -> str:
        if not force and self._token and time.monotonic() < self._token_expiry:
            return self._token
        if not self.email or not self.password:
            raise SearchError("Catalog credentials not configured (CATALOG_EMAIL / CATALOG_PASSWORD)")
        try:
            response = await self._client.post(
                AUTH_PATH,
                json={"email": self.email, "password": self.password, "includeRefreshToken": True},
            )
            response.raise_for_status()
            token = response.json()["accessToken"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise SearchError(f"Catalog authentication failed: {e}") from e
        self._token = token
        self._token_expiry = time.monotonic() + CATALOG_TOKEN_TTL_S
        logger.info("Catalog token refreshed")
        return token

    async def _post_search(self, body: dict, token: str) -> httpx.Response:
        return await self._client.post(
            SEARCH_PATH,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def search(self, query: str, hints: Optional[dict] = None) -> CatalogSearchResult:
        resolved = build_query(query, hints)
        if not resolved:
            raise SearchError("Empty catalog query")
        body = {
            "updatedAtFrom": CATALOG_UPDATED_AT_FROM,
            "productFilter": "CORE_FIELDS",
            "search": resolved,
            "searchIn": {"or": ["title"]},
            "fuzzyMatch": True,
        }
        try:
            token = await self._authenticate()
            response = await self._post_search(body, token)
            if response.status_code == 401:
                token = await self._authenticate(force=True)
                response = await self._post_search(body, token)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise SearchError(
                f"Catalog search failed ({e.response.status_code}): {e.response.text[:300]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise SearchError(f"Catalog search failed: {e}") from e

        candidates: list[CandidateMatch] = []
        for rank, raw in enumerate((payload.get("results") or [])[: self.result_cap]):
            try:
                candidates.append(normalize_product(raw, rank=rank))
            except ValueError:
                logger.debug(f"Skipping catalog product without key at rank {rank}")
        logger.info(f"Catalog search '{resolved}' → {len(candidates)} candidates")
        return CatalogSearchResult(candidates=candidates, resolved_query=resolved)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
