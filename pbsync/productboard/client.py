"""Async ProductBoard REST client.

Every fetch returns a tagged result instead of raising, so callers can
tell an expected-empty relation from a genuine failure by type:

    Found(items) | NotFound(reason) | FetchError(error)

Passing ``required=True`` turns anything other than ``Found`` into a
``FatalCollectionError``.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Union

import httpx
from tenacity import AsyncRetrying, stop_after_attempt

from pbsync import config
from pbsync.errors import FatalCollectionError
from pbsync.observability import record_source_request
from pbsync.productboard.retry import (
    log_retry_attempt,
    retry_if_rate_limit_or_timeout,
    wait_rate_limit_with_backoff,
)

logger = logging.getLogger("pbsync.productboard")

# Entity ids in paths are collapsed so metric labels stay bounded.
_ID_SEGMENT = re.compile(r"/(products|initiatives|components|features)/[^/]+")


@dataclass(frozen=True)
class Found:
    items: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class NotFound:
    reason: str = ""


@dataclass(frozen=True)
class FetchError:
    error: str


FetchResult = Union[Found, NotFound, FetchError]


def _describe(result: FetchResult) -> str:
    if isinstance(result, NotFound):
        return f"not found ({result.reason})" if result.reason else "not found"
    if isinstance(result, FetchError):
        return result.error
    return "ok"


class ProductBoardClient:
    """Thin wrapper over ``httpx.AsyncClient`` with cursor pagination and retries."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        wait: Any = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._max_attempts = max_attempts or config.HTTP_MAX_ATTEMPTS
        self._wait = wait or wait_rate_limit_with_backoff
        self._http = httpx.AsyncClient(
            base_url=base_url or config.PRODUCTBOARD_API_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Version": "1",
                "Accept": "application/json",
            },
            timeout=timeout or config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> ProductBoardClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Entity endpoints ────────────────────────────────────────────

    async def get_products(self, product_id: str | None = None, *, required: bool = True) -> FetchResult:
        if product_id:
            return await self.fetch_entity(
                f"/products/{product_id}", required=required, label=f"product {product_id}"
            )
        return await self.fetch_collection("/products", required=required, label="products")

    async def get_initiatives(self, initiative_id: str | None = None, *, required: bool = True) -> FetchResult:
        if initiative_id:
            return await self.fetch_entity(
                f"/initiatives/{initiative_id}", required=required, label=f"initiative {initiative_id}"
            )
        return await self.fetch_collection("/initiatives", required=required, label="initiatives")

    async def get_components(self, *, required: bool = False) -> FetchResult:
        return await self.fetch_collection("/components", required=required, label="components")

    async def get_initiative_features(self, initiative_id: str, *, required: bool = False) -> FetchResult:
        return await self.fetch_collection(
            f"/links/initiatives/{initiative_id}/features",
            required=required,
            label=f"features of initiative {initiative_id}",
        )

    async def get_component_features(self, component_id: str, *, required: bool = False) -> FetchResult:
        return await self.fetch_collection(
            f"/components/{component_id}/features",
            required=required,
            label=f"features of component {component_id}",
        )

    async def get_sub_features(self, feature_id: str, *, required: bool = False) -> FetchResult:
        return await self.fetch_collection(
            "/features",
            {"parent.id": feature_id},
            required=required,
            label=f"sub-features of feature {feature_id}",
        )

    # ── Fetch primitives ────────────────────────────────────────────

    async def fetch_collection(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        required: bool = False,
        label: str = "",
    ) -> FetchResult:
        """Fetch every page of a collection, following ``links.next`` cursors."""
        label = label or path
        items: list[dict[str, Any]] = []
        url: str | None = path
        page_params = params
        seen_urls: set[str] = set()
        first_page = True

        while url:
            if url in seen_urls:
                logger.warning("Pagination cursor loop detected for %s at %s", label, url)
                break
            seen_urls.add(url)
            result = await self._request(url, page_params)
            if not isinstance(result, dict):
                if isinstance(result, NotFound) and not first_page:
                    result = FetchError(f"page disappeared while paginating {label}")
                return self._resolve(result, required=required, label=label)

            data = result.get("data")
            if data is None:
                data = []
            if not isinstance(data, list):
                return self._resolve(
                    FetchError(f"unexpected payload for {label}: 'data' is not a list"),
                    required=required,
                    label=label,
                )
            items.extend(item for item in data if isinstance(item, dict))

            links = result.get("links") or {}
            url = links.get("next") if isinstance(links, dict) else None
            page_params = None
            first_page = False

        return Found(items)

    async def fetch_entity(self, path: str, *, required: bool = False, label: str = "") -> FetchResult:
        label = label or path
        result = await self._request(path, None)
        if not isinstance(result, dict):
            return self._resolve(result, required=required, label=label)
        data = result.get("data")
        if not isinstance(data, dict):
            return self._resolve(
                FetchError(f"unexpected payload for {label}: 'data' is not an object"),
                required=required,
                label=label,
            )
        return Found([data])

    @staticmethod
    def _resolve(result: FetchResult, *, required: bool, label: str) -> FetchResult:
        if required and not isinstance(result, Found):
            raise FatalCollectionError(label, _describe(result))
        return result

    async def _request(self, url: str, params: dict[str, Any] | None) -> dict[str, Any] | NotFound | FetchError:
        t0 = time.monotonic()
        endpoint = url.split("?", 1)[0]
        metric_label = _metric_endpoint(endpoint)
        try:
            payload = await self._get_json(url, params)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 404:
                record_source_request(metric_label, "not_found", (time.monotonic() - t0) * 1000)
                return NotFound(f"HTTP 404 for {endpoint}")
            record_source_request(metric_label, "error", (time.monotonic() - t0) * 1000)
            return FetchError(f"HTTP {status} for {endpoint}")
        except httpx.HTTPError as exc:
            record_source_request(metric_label, "error", (time.monotonic() - t0) * 1000)
            return FetchError(f"{type(exc).__name__} for {endpoint}: {exc}")
        except ValueError as exc:
            record_source_request(metric_label, "error", (time.monotonic() - t0) * 1000)
            return FetchError(f"invalid JSON from {endpoint}: {exc}")

        record_source_request(metric_label, "ok", (time.monotonic() - t0) * 1000)
        if not isinstance(payload, dict):
            return FetchError(f"unexpected payload type from {endpoint}: {type(payload).__name__}")
        return payload

    async def _get_json(self, url: str, params: dict[str, Any] | None) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_rate_limit_or_timeout,
            wait=self._wait,
            before_sleep=log_retry_attempt(logger, self._max_attempts),
            reraise=True,
        ):
            with attempt:
                response = await self._http.get(url, params=params)
                response.raise_for_status()
                return response.json()


def _metric_endpoint(endpoint: str) -> str:
    return _ID_SEGMENT.sub(r"/\1/{id}", httpx.URL(endpoint).path)
