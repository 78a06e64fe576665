"""Materialises ForEach collections from their declared sources."""

import csv
import io
import json
import logging
import re
from pathlib import Path
from typing import Any

import httpx

from models.loop import (
    CollectionFormat,
    FileSource,
    HttpSource,
    InlineSource,
    RangeSource,
    StateSource,
)
from models.state import WorkflowState
from services.condition_evaluator import lookup_path

_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


class CollectionSourceError(Exception):
    """Raised when a collection cannot be loaded or is not a list."""

    pass


def extract_json_path(data: Any, path: str) -> Any:
    """Follow a path such as `data.items[0].values` into parsed JSON."""
    current = data
    for name, index in _PATH_TOKEN.findall(path):
        if name:
            if not isinstance(current, dict) or name not in current:
                raise CollectionSourceError(f"json_path segment not found: {name}")
            current = current[name]
        else:
            position = int(index)
            if not isinstance(current, list) or position >= len(current):
                raise CollectionSourceError(f"json_path index out of range: [{index}]")
            current = current[position]
    return current


class CollectionResolver:
    """Resolves a CollectionSource to a finite list, fetched once."""

    def __init__(self, http_timeout: float = 30.0, base_dir: str | None = None):
        if http_timeout <= 0:
            raise ValueError("http_timeout must be positive")
        self._http_timeout = http_timeout
        self._base_dir = Path(base_dir) if base_dir else None
        self.logger = logging.getLogger(__name__)

    def resolve(self, source, state: WorkflowState) -> list[Any]:
        """Return the items for `source`, capped by its `max_items`."""
        if source is None:
            raise ValueError("source is required")

        if isinstance(source, InlineSource):
            items = list(source.items)
        elif isinstance(source, RangeSource):
            items = list(range(source.start, source.end, source.step))
        elif isinstance(source, StateSource):
            items = self._from_state(source, state)
        elif isinstance(source, FileSource):
            items = self._from_file(source)
        elif isinstance(source, HttpSource):
            items = self._from_http(source)
        else:
            raise CollectionSourceError(f"Unsupported collection source: {source!r}")

        if source.max_items is not None and len(items) > source.max_items:
            self.logger.info(
                f"Collection truncated from {len(items)} to {source.max_items} items"
            )
            items = items[: source.max_items]

        self.logger.debug(f"Resolved {source.source} collection with {len(items)} items")
        return items

    def _from_state(self, source: StateSource, state: WorkflowState) -> list[Any]:
        if state is None:
            raise ValueError("state is required")
        found, value = lookup_path(state.metadata, source.key)
        if not found:
            raise CollectionSourceError(f"State key not found: {source.key}")
        if not isinstance(value, list):
            raise CollectionSourceError(f"State key is not a list: {source.key}")
        return list(value)

    def _from_file(self, source: FileSource) -> list[Any]:
        path = Path(source.path)
        if not path.is_absolute() and self._base_dir is not None:
            path = self._base_dir / path
        if not path.exists():
            raise CollectionSourceError(f"Collection file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except UnicodeDecodeError as e:
            raise CollectionSourceError(f"Collection file is not valid UTF-8: {path}: {e}") from e
        except OSError as e:
            raise CollectionSourceError(f"Cannot read collection file {path}: {e}") from e
        return self._parse(content, source.format, str(path))

    def _from_http(self, source: HttpSource) -> list[Any]:
        self.logger.info(f"Fetching collection: {source.method} {source.url}")
        try:
            with httpx.Client(timeout=self._http_timeout) as client:
                response = client.request(
                    source.method,
                    source.url,
                    headers=source.headers,
                    json=source.body,
                )
        except httpx.ConnectError as e:
            raise CollectionSourceError(f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise CollectionSourceError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise CollectionSourceError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise CollectionSourceError(f"HTTP {response.status_code}: {response.text}")

        if source.json_path:
            if source.format != CollectionFormat.JSON:
                raise CollectionSourceError("json_path requires json format")
            data = self._load_json(response.text, source.url)
            value = extract_json_path(data, source.json_path)
            if not isinstance(value, list):
                raise CollectionSourceError(
                    f"json_path {source.json_path} does not point to a list"
                )
            return value

        return self._parse(response.text, source.format, source.url)

    def _load_json(self, content: str, origin: str) -> Any:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise CollectionSourceError(f"Invalid JSON from {origin}: {e}") from e

    def _parse(self, content: str, fmt: CollectionFormat, origin: str) -> list[Any]:
        if fmt == CollectionFormat.JSON:
            data = self._load_json(content, origin)
            if not isinstance(data, list):
                raise CollectionSourceError(f"Expected a JSON array from {origin}")
            return data

        if fmt == CollectionFormat.JSON_LINES:
            return [
                self._load_json(line, origin)
                for line in content.splitlines()
                if line.strip()
            ]

        if fmt == CollectionFormat.CSV:
            return [dict(row) for row in csv.DictReader(io.StringIO(content))]

        return [line for line in content.splitlines() if line.strip()]
