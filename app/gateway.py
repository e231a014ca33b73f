import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .envelope import Rows, parse_json, unwrap_body
from .schemas import Step
from .text import clip

logger = logging.getLogger("uvicorn.error")

STEP_BODY_LIMIT = 2000


@dataclass
class GatewayResult:
    """Outcome of one Gateway request. Non-2xx statuses are not errors here."""

    status: int = 0
    body: bytes = b""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return parse_json(self.body)

    def rows(self) -> Rows:
        return unwrap_body(self.body)

    def step(self, tool: str, campaign_id: Optional[str] = None) -> Step:
        if self.error is not None:
            return Step(tool=tool, campaign_id=campaign_id, status=self.status, error=self.error)
        return Step(
            tool=tool,
            campaign_id=campaign_id,
            status=self.status,
            body=clip(self.text.strip(), STEP_BODY_LIMIT),
        )


class GatewayClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        debug: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.debug = debug
        # Handlers walk pages sequentially; a small shared pool is enough.
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    async def get(self, path: str) -> GatewayResult:
        """GET a path that may already carry its query string."""
        return await self._send("GET", path)

    async def request_json(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
    ) -> GatewayResult:
        return await self._send(method, path, params=query or None, json_body=body)

    async def request_multipart(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, str]] = None,
        multipart: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        multipart = multipart or {}
        data: Dict[str, List[str]] = {}
        for key, values in (multipart.get("fields") or {}).items():
            if isinstance(values, list):
                data[key] = [str(v) for v in values]
            else:
                data[key] = [str(values)]
        files = []
        for item in multipart.get("files") or []:
            if not isinstance(item, dict):
                continue
            try:
                raw = base64.b64decode(item.get("base64") or "", validate=True)
            except ValueError as exc:
                return GatewayResult(error=f"invalid base64 for {item.get('file_name') or 'file'}: {exc}")
            files.append(
                (
                    item.get("field_name") or "file",
                    (
                        item.get("file_name") or "upload.bin",
                        raw,
                        item.get("content_type") or "application/octet-stream",
                    ),
                )
            )
        return await self._send(method, path, params=query or None, data=data, files=files or None)

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[list] = None,
    ) -> GatewayResult:
        method = method.upper().strip() or "GET"
        url = self._url(path)
        if self.debug:
            logger.debug("gateway %s %s params=%s", method, url, params)
        try:
            resp = await self.client.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                files=files,
                headers=self._headers(),
            )
        except httpx.RequestError as e:
            logger.warning("gateway %s %s failed: %s", method, path, e)
            return GatewayResult(error=str(e) or e.__class__.__name__)
        if self.debug:
            logger.debug("gateway %s %s -> status=%s bytes=%s", method, url, resp.status_code, len(resp.content))
        return GatewayResult(status=resp.status_code, body=resp.content)

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
