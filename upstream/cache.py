"""
Response cache for upstream payloads, keyed by request URL

Injected into RangeFetcher. Whether a call reads from it is decided per call
through FetchOptions, never by ambient state.
"""

import copy
import json
import os
from typing import Any, Dict, Optional, Protocol

from config import get_logger

logger = get_logger(__name__).bind(component="cache")


class ResponseCache(Protocol):
    """Storage for raw upstream payloads"""

    def get(self, url: str) -> Optional[Any]:
        ...

    def put(self, url: str, payload: Any) -> None:
        ...

    def clear(self) -> None:
        ...


class JsonFileResponseCache:
    """Cache persisted as a single JSON object of {url: payload}.

    The file is read lazily on first access and rewritten after every put.
    Load and persist failures are logged; the cache keeps working in memory.
    """

    def __init__(self, path: str):
        self.path = path
        self._entries: Dict[str, Any] = {}
        self._loaded = False

    def _load(self):
        if self._loaded:
            return
        self._loaded = True
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
            if not raw.strip():
                return
            data = json.loads(raw)
            if isinstance(data, dict):
                self._entries.update(data)
            logger.debug("loaded response cache", path=self.path, entries=len(self._entries))
        except (OSError, ValueError) as e:
            logger.warning("failed to load response cache", path=self.path, error=str(e))

    def _persist(self):
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self._entries, f, ensure_ascii=False, indent=2)
        except (OSError, TypeError) as e:
            logger.warning("failed to persist response cache", path=self.path, error=str(e))

    def get(self, url: str) -> Optional[Any]:
        self._load()
        cached = self._entries.get(url)
        return copy.deepcopy(cached) if cached is not None else None

    def put(self, url: str, payload: Any) -> None:
        self._load()
        self._entries[url] = copy.deepcopy(payload)
        self._persist()

    def clear(self) -> None:
        self._entries.clear()
        self._loaded = True
        if os.path.exists(self.path):
            try:
                os.remove(self.path)
            except OSError as e:
                logger.warning("failed to delete response cache", path=self.path, error=str(e))

    def __len__(self) -> int:
        self._load()
        return len(self._entries)
