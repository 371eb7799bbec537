"""Client for the browser-side collaborator (tabs, page visibility, redirects)."""

import asyncio
from typing import Any, Protocol
from urllib.parse import urlencode

import requests

from timedash.errors import GoneTargetError, TransientIOError
from timedash.model.models import TabInfo
from timedash.watchers.logger import logger

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_FOUND = 404


class BrowserBridge(Protocol):
    """What the tracker and the coordinator need from the browser."""

    async def get_tab(self, tab_id: int) -> TabInfo: ...

    async def query_active_tab(self, window_id: int) -> TabInfo | None: ...

    async def check_visibility(self, tab_id: int) -> bool: ...

    async def redirect(self, tab_id: int, url: str) -> None: ...


def build_block_page_url(base_url: str, domain: str, original_url: str, reason: str | None) -> str:
    """Redirect target carrying the blocked domain, original URL and reason."""
    query = urlencode({"domain": domain, "url": original_url, "reason": reason or ""})
    sep = "&" if "?" in base_url else "?"
    return f"{base_url}{sep}{query}"


def _to_tab(data: dict[str, Any]) -> TabInfo:
    return {
        "id": int(data["id"]),
        "window_id": data.get("windowId"),
        "url": data.get("url"),
        "active": bool(data.get("active", False)),
    }


class HttpBrowserBridge:
    """Talks to the extension's native bridge over HTTP.

    A 404 means the tab (or the page inside it) is gone and surfaces as
    :class:`GoneTargetError`; every other failure is a
    :class:`TransientIOError`.
    """

    def __init__(self, base_url: str, timeout: float = 3.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, tab_id: int | None = None, **kwargs: Any) -> Any:
        try:
            response = requests.request(
                method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            msg = f"browser bridge unreachable: {exc}"
            raise TransientIOError(msg) from exc

        status_code = int(getattr(response, "status_code", 0))
        if status_code == HTTP_NOT_FOUND:
            raise GoneTargetError(tab_id)
        if status_code != HTTP_OK:
            msg = f"browser bridge returned HTTP {status_code} for {method} {path}"
            raise TransientIOError(msg)
        try:
            return response.json()
        except ValueError:
            return None

    async def get_tab(self, tab_id: int) -> TabInfo:
        data = await asyncio.to_thread(self._request, "GET", f"/tabs/{tab_id}", tab_id)
        return _to_tab(data)

    async def query_active_tab(self, window_id: int) -> TabInfo | None:
        try:
            data = await asyncio.to_thread(
                self._request, "GET", f"/windows/{window_id}/active-tab"
            )
        except GoneTargetError:
            return None
        return _to_tab(data) if data else None

    async def check_visibility(self, tab_id: int) -> bool:
        data = await asyncio.to_thread(
            self._request,
            "POST",
            f"/tabs/{tab_id}/visibility",
            tab_id,
            json={"type": "CHECK_VISIBILITY"},
        )
        return bool((data or {}).get("visible"))

    async def redirect(self, tab_id: int, url: str) -> None:
        await asyncio.to_thread(
            self._request, "POST", f"/tabs/{tab_id}/redirect", tab_id, json={"url": url}
        )
        logger.info("Redirected tab %s -> %s", tab_id, url)
