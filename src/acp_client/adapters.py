"""Locating an agent adapter that is already running.

Editors that host an ACP adapter leave a small JSON file saying where it
listens. Zed writes ``{"host": ..., "port": ..., "path": ...}`` and Cursor
writes ``{"url": "ws://host:port/path"}``. Either shape parses into an
`AdapterEndpoint`; `Transport.connect` opens a stream to it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, ValidationError, model_validator

from .errors import TransportError

logger = logging.getLogger(__name__)

AUTO = "auto"
ADAPTER_FILES = (
    "~/.config/Zed/claude/adapter_info.json",
    "~/.cursor/mcp/agent/bridge.json",
)


class AdapterEndpoint(BaseModel):
    host: str = "127.0.0.1"
    port: int
    path: str = ""

    @model_validator(mode="before")
    @classmethod
    def _from_url(cls, data: Any) -> Any:
        if isinstance(data, dict) and "url" in data and "port" not in data:
            parts = urlsplit(str(data["url"]))
            if not parts.hostname or parts.port is None:
                raise ValueError(f"adapter url {data['url']!r} has no host and port")
            return {"host": parts.hostname, "port": parts.port, "path": parts.path}
        return data

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}{self.path}"


def parse_endpoint(value: str) -> AdapterEndpoint:
    """Parse ``HOST:PORT`` or a ``scheme://host:port/path`` URL.

    Raises:
        ValueError: ``value`` names no host and port.
    """
    if "://" in value:
        return AdapterEndpoint.model_validate({"url": value})
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"expected HOST:PORT, got {value!r}")
    return AdapterEndpoint(host=host, port=int(port))


def read_adapter_file(path: Union[str, Path]) -> AdapterEndpoint:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return AdapterEndpoint.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        raise TransportError(f"Unusable adapter file {path}: {e}") from e


def discover_adapter(paths: Iterable[Union[str, Path]] = ADAPTER_FILES) -> Optional[AdapterEndpoint]:
    """Return the endpoint from the first adapter file that exists, if any."""
    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_file():
            endpoint = read_adapter_file(path)
            logger.info("Found agent adapter %s in %s", endpoint.url, path)
            return endpoint
    return None


def resolve_endpoint(connect: str, adapter_file: Optional[str] = None) -> AdapterEndpoint:
    """Turn the ``connect`` setting into an endpoint.

    ``auto`` looks in ``adapter_file`` if given, else in the known editor
    locations; anything else is parsed with `parse_endpoint`.

    Raises:
        TransportError: discovery found no usable adapter file.
    """
    if connect != AUTO:
        return parse_endpoint(connect)
    paths = [adapter_file] if adapter_file else list(ADAPTER_FILES)
    endpoint = discover_adapter(paths)
    if endpoint is None:
        searched = ", ".join(map(str, paths))
        raise TransportError(f"No running agent adapter found in {searched}; open Zed or Cursor first")
    return endpoint
