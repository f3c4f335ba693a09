# store.py
# ------------------------------------------------------------------
# Persistence collaborator for finished analyses, plus the cache check
# the orchestrator runs before doing any work.
#
# Two implementations share one duck-typed interface:
#   get(symbol)  -> Optional[dict]   most recent payload, or None
#   save(record) -> dict             persist AnalysisRecord, return payload
#
#   InMemoryResultStore : capped at max_entries with LRU-style eviction
#                         so long-running processes do not grow unboundedly.
#   JsonFileResultStore : one <SYMBOL>.json per ticker; entries older than
#                         max_age are treated as absent.
# ------------------------------------------------------------------

import copy
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol

from valuation_engine.models import AnalysisRecord

_logger = logging.getLogger(__name__)

MAX_CACHE_ENTRIES = 50
DEFAULT_MAX_AGE = timedelta(hours=24)


class ResultStore(Protocol):
    def get(self, symbol: str) -> Optional[dict]: ...

    def save(self, record: AnalysisRecord) -> dict: ...


def _key(symbol: str) -> str:
    return symbol.upper().strip()


class InMemoryResultStore:
    def __init__(self, max_entries: int = MAX_CACHE_ENTRIES):
        self.max_entries = max_entries
        self._cache: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, symbol: str) -> Optional[dict]:
        key = _key(symbol)
        with self._lock:
            if key not in self._cache:
                return None
            self._cache[key] = self._cache.pop(key)     # mark most recently used
            return copy.deepcopy(self._cache[key])

    def save(self, record: AnalysisRecord) -> dict:
        payload = record.to_dict()
        key = _key(record.symbol)
        with self._lock:
            self._cache.pop(key, None)
            if len(self._cache) >= self.max_entries:
                del self._cache[next(iter(self._cache))]
            self._cache[key] = copy.deepcopy(payload)
        return payload

    def __len__(self) -> int:
        return len(self._cache)


class JsonFileResultStore:
    def __init__(self, directory, max_age: Optional[timedelta] = DEFAULT_MAX_AGE):
        self.directory = Path(directory)
        self.max_age = max_age
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, symbol: str) -> Path:
        return self.directory / f"{_key(symbol)}.json"

    def get(self, symbol: str) -> Optional[dict]:
        path = self._path(symbol)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            _logger.warning("Ignoring unreadable cached analysis %s: %s", path, e)
            return None

        if self.max_age is not None:
            try:
                created = datetime.fromisoformat(payload["createdAt"])
                age = datetime.now(timezone.utc) - created
            except (KeyError, TypeError, ValueError):
                _logger.warning("Ignoring cached analysis %s without a usable createdAt", path)
                return None
            if age > self.max_age:
                _logger.debug("Cached analysis for %s is stale (%s)", symbol, created)
                return None
        return payload

    def save(self, record: AnalysisRecord) -> dict:
        payload = record.to_dict()
        path = self._path(record.symbol)
        # Write-then-rename: readers never observe a partially written file.
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, allow_nan=False)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        _logger.info("Saved analysis %s for %s to %s", record.trace_id, record.symbol, path)
        return payload
