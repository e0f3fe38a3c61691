from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

import httpx

from src.setup.tool_server_config import HttpServerSettings
from src.tool_servers.server import ToolHandler, ToolInputError, main


class FetchUrl(ToolHandler):
    name = "http.fetch"
    description = "GET or HEAD an allow-listed URL and return status and body text."
    parameters = {
        "url": {"type": "string", "description": "Absolute http(s) URL."},
        "method": {"type": "string", "description": "GET (default) or HEAD."},
        "headers": {"type": "object", "description": "Extra request headers."},
    }

    def __init__(self, settings: HttpServerSettings, client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._client = client

    def handle(self, params: dict[str, Any]) -> dict:
        url = params.get("url")
        if not isinstance(url, str) or not url:
            raise ToolInputError("'url' is required")
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ToolInputError("Only absolute http(s) URLs are allowed")
        if parts.hostname.lower() not in self._settings.allowed_hosts:
            raise ToolInputError(f"Host {parts.hostname!r} is not allowed")
        method = str(params.get("method") or "GET").upper()
        if method not in ("GET", "HEAD"):
            raise ToolInputError("Only GET and HEAD are allowed")
        headers = params.get("headers") or {}
        if not isinstance(headers, dict):
            raise ToolInputError("'headers' must be an object")

        client = self._client or httpx.Client(
            timeout=self._settings.HTTP_TIMEOUT_SECONDS, follow_redirects=False
        )
        try:
            response = client.request(method, url, headers={str(k): str(v) for k, v in headers.items()})
        except httpx.HTTPError as exc:
            raise ToolInputError(f"Request failed: {exc}") from exc
        finally:
            if self._client is None:
                client.close()

        body = response.content[: self._settings.HTTP_MAX_BODY_BYTES]
        return {
            "status": response.status_code,
            "content_type": response.headers.get("content-type"),
            "body": body.decode(response.encoding or "utf-8", errors="replace"),
            "truncated": len(response.content) > self._settings.HTTP_MAX_BODY_BYTES,
        }


def build_handlers(settings: HttpServerSettings | None = None) -> list[ToolHandler]:
    return [FetchUrl(settings or HttpServerSettings())]


if __name__ == "__main__":
    main(build_handlers())
