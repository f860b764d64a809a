"""Generic modules available to every workflow.

Integration-specific modules (CRM, messaging, AI) live outside this package
and register themselves through ``config.modules``.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..registry import ModuleRegistry

logger = logging.getLogger(__name__)

HttpHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def http_request_handler(transport: Optional[httpx.AsyncBaseTransport] = None) -> HttpHandler:
    """Build the ``http.client.request`` handler.

    ``transport`` is handed to :class:`httpx.AsyncClient`; tests pass an
    :class:`httpx.MockTransport`.
    """

    async def request(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send an HTTP request and return status, headers and body."""
        method = str(payload.get("method", "GET")).upper()
        url = payload["url"]
        async with httpx.AsyncClient(transport=transport, timeout=payload.get("timeout", 30.0)) as client:
            response = await client.request(
                method,
                url,
                params=payload.get("query"),
                headers=payload.get("headers"),
                json=payload.get("json"),
                content=payload.get("body"),
            )
        logger.debug(f"{method} {url} -> {response.status_code}")
        if payload.get("raise_for_status", True):
            response.raise_for_status()

        content_type = response.headers.get("content-type", "")
        body: Any = response.json() if "json" in content_type else response.text
        return {"status": response.status_code, "headers": dict(response.headers), "body": body}

    return request


def echo(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return the resolved params unchanged."""
    return dict(payload)


def merge(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow-merge a list of objects, later keys win."""
    merged: Dict[str, Any] = {}
    for item in payload.get("objects", []):
        if not isinstance(item, dict):
            raise TypeError(f"merge expects objects, got {type(item).__name__}")
        merged.update(item)
    return merged


def join(payload: Dict[str, Any]) -> str:
    """Join items into a single string."""
    separator = payload.get("separator", " ")
    return separator.join(str(item) for item in payload.get("items", []))


def register_builtin_modules(
    registry: ModuleRegistry, http_transport: Optional[httpx.AsyncBaseTransport] = None
) -> ModuleRegistry:
    registry.add(
        "http.client.request",
        http_request_handler(http_transport),
        params=[
            "url",
            {"name": "method", "type_ref": "str", "required": False, "default_json": "GET"},
            {"name": "headers", "type_ref": "object", "required": False},
            {"name": "query", "type_ref": "object", "required": False},
            {"name": "json", "required": False},
            {"name": "body", "type_ref": "str", "required": False},
            {"name": "timeout", "type_ref": "number", "required": False},
        ],
        integration="http",
    )
    registry.add("utils.data.echo", echo)
    registry.add(
        "utils.data.merge",
        merge,
        params=[{"name": "objects", "type_ref": "array"}],
    )
    registry.add(
        "utils.text.join",
        join,
        params=[
            {"name": "items", "type_ref": "array"},
            {"name": "separator", "type_ref": "str", "required": False, "default_json": " "},
        ],
    )
    return registry
