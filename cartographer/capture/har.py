"""
HAR Loader - Converts HTTP Archive 1.2 captures into Exchange records.
"""

import base64
import binascii
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from ..core.errors import MalformedExchange
from ..core.models import Exchange


logger = logging.getLogger(__name__)

# Repeated headers are joined with this separator; HAR keeps each occurrence separately
SET_COOKIE_SEPARATOR = "\n"


class HarLoader:
    """
    Reads HAR documents entry by entry.
    Entries that cannot be converted are skipped and remembered in `skipped`.
    """

    def __init__(self):
        self.skipped: list[tuple[int, str]] = []

    def load(self, source: str | Path | dict[str, Any]) -> list[Exchange]:
        """
        Load all convertible entries.

        Args:
            source: Path to a .har file, or an already parsed HAR document

        Returns:
            Exchanges in capture order
        """
        return list(self.iter_exchanges(source))

    def iter_exchanges(self, source: str | Path | dict[str, Any]) -> Iterator[Exchange]:
        document = self._read(source)
        entries = document.get("log", {}).get("entries", [])
        if not isinstance(entries, list):
            raise MalformedExchange("HAR log.entries is not a list")

        for index, entry in enumerate(entries):
            try:
                yield entry_to_exchange(entry)
            except MalformedExchange as e:
                logger.warning("Skipping HAR entry %d: %s", index, e)
                self.skipped.append((index, str(e)))

    def _read(self, source: str | Path | dict[str, Any]) -> dict[str, Any]:
        if isinstance(source, dict):
            return source
        try:
            with open(source, encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise MalformedExchange(f"cannot read HAR file {source}: {e}") from e
        if not isinstance(document, dict):
            raise MalformedExchange("HAR document is not an object")
        return document


def entry_to_exchange(entry: dict[str, Any]) -> Exchange:
    """
    Convert one HAR entry.

    Raises:
        MalformedExchange: If the entry lacks a request method, URL or response status
    """
    if not isinstance(entry, dict):
        raise MalformedExchange("HAR entry is not an object")

    request = entry.get("request") or {}
    response = entry.get("response") or {}

    method = request.get("method")
    url = request.get("url")
    status = response.get("status")
    if not method or not url or not isinstance(status, int):
        raise MalformedExchange("HAR entry lacks method, url or status")

    post_data = request.get("postData") or {}
    content = response.get("content") or {}

    return Exchange(
        timestamp=_parse_timestamp(entry.get("startedDateTime")),
        method=method.upper(),
        url=url,
        request_headers=_headers(request.get("headers", [])),
        request_body=post_data.get("text") or None,
        status_code=status,
        response_headers=_headers(response.get("headers", [])),
        response_body=_content_text(content),
    )


def _headers(items: list[dict[str, Any]]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for item in items:
        name = str(item.get("name", "")).lower()
        # HTTP/2 pseudo headers
        if not name or name.startswith(":"):
            continue
        value = str(item.get("value", ""))
        if name in headers:
            separator = SET_COOKIE_SEPARATOR if name == "set-cookie" else ", "
            if name == "cookie":
                separator = "; "
            headers[name] = headers[name] + separator + value
        else:
            headers[name] = value
    return headers


def _content_text(content: dict[str, Any]) -> str | None:
    text = content.get("text")
    if not text:
        return None
    if content.get("encoding") == "base64":
        try:
            return base64.b64decode(text).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
    return text


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        raise MalformedExchange("HAR entry lacks startedDateTime")
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise MalformedExchange(f"invalid startedDateTime {value!r}") from e
