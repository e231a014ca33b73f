import asyncio
import logging
import time
from typing import Any, Dict, Optional

from .envelope import EnvelopeError
from .gateway import GatewayClient

logger = logging.getLogger("uvicorn.error")

CatalogPaths = Dict[str, Dict[str, Any]]


class CatalogError(RuntimeError):
    pass


def match_openapi_path(template: str, path: str) -> bool:
    """Match ``/ads/campaigns/{id}/impressions`` against a concrete path.

    Segment counts must be equal; a ``{param}`` segment matches any non-empty
    segment and literal segments must be identical.
    """
    template = (template or "").strip()
    path = (path or "").strip()
    if template == path:
        return True
    template = template.strip("/")
    path = path.strip("/")
    if not template or not path:
        return template == path
    template_parts = template.split("/")
    path_parts = path.split("/")
    if len(template_parts) != len(path_parts):
        return False
    for expected, actual in zip(template_parts, path_parts):
        if expected.startswith("{") and expected.endswith("}"):
            if not actual.strip():
                return False
            continue
        if expected != actual:
            return False
    return True


class ToolCatalog:
    """Allowlist of Gateway operations built from its OpenAPI document.

    The document (or the error from fetching it) is cached for ``ttl_s``.
    Concurrent callers wait on the lock instead of refetching.
    """

    def __init__(self, gateway: GatewayClient, ttl_s: float = 120):
        self.gateway = gateway
        self.ttl_s = ttl_s
        self._lock = asyncio.Lock()
        self._paths: CatalogPaths = {}
        self._error: Optional[str] = None
        self._fetched_at = 0.0

    def _fresh(self) -> bool:
        return self._fetched_at > 0 and (time.monotonic() - self._fetched_at) < self.ttl_s

    def invalidate(self) -> None:
        self._fetched_at = 0.0

    async def fetch(self) -> CatalogPaths:
        async with self._lock:
            if not self._fresh():
                await self._refresh_locked()
            if self._error is not None:
                raise CatalogError(self._error)
            return self._paths

    async def _refresh_locked(self) -> None:
        result = await self.gateway.get("/openapi.json")
        self._fetched_at = time.monotonic()
        if result.error is not None:
            self._error = result.error
        elif not result.ok:
            self._error = f"openapi fetch failed (status {result.status})"
        else:
            try:
                document = result.json()
            except EnvelopeError as exc:
                self._error = f"openapi decode failed: {exc}"
            else:
                paths = document.get("paths") if isinstance(document, dict) else None
                self._paths = {k: v for k, v in (paths or {}).items() if isinstance(v, dict)}
                self._error = None
                return
        self._paths = {}
        logger.warning("tool catalog unavailable: %s", self._error)

    async def is_allowed(self, method: str, path: str) -> bool:
        try:
            paths = await self.fetch()
        except CatalogError:
            return False
        method = (method or "").strip().lower()
        path = (path or "").strip()
        if path in paths:
            return method in paths[path]
        for template, operations in paths.items():
            if method in operations and match_openapi_path(template, path):
                return True
        return False
