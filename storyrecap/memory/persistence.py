"""Persistence sinks: where chat records are written as JSON blobs."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from storyrecap.utils.retry import persist_retry

logger = logging.getLogger(__name__)


class PersistenceSink(ABC):
    """Stores and retrieves an opaque JSON blob per chat."""

    @abstractmethod
    async def load(self, chat_id: str) -> Optional[Any]:
        """Return the stored blob, or None if nothing was saved."""
        ...

    @abstractmethod
    async def save(self, chat_id: str, blob: dict[str, Any]) -> None:
        """Replace the stored blob for a chat."""
        ...

    @abstractmethod
    async def delete(self, chat_id: str) -> None:
        """Forget everything stored for a chat."""
        ...


class InMemorySink(PersistenceSink):
    """Keeps blobs in a dict; serializes on save so callers cannot alias state."""

    def __init__(self) -> None:
        self._blobs: dict[str, str] = {}

    async def load(self, chat_id: str) -> Optional[Any]:
        raw = self._blobs.get(chat_id)
        return json.loads(raw) if raw is not None else None

    async def save(self, chat_id: str, blob: dict[str, Any]) -> None:
        self._blobs[chat_id] = json.dumps(blob, ensure_ascii=False)

    async def delete(self, chat_id: str) -> None:
        self._blobs.pop(chat_id, None)

    def raw(self, chat_id: str) -> Optional[str]:
        """Stored text for a chat (lets callers plant malformed data)."""
        return self._blobs.get(chat_id)

    def put_raw(self, chat_id: str, text: str) -> None:
        self._blobs[chat_id] = text


class JsonFileSink(PersistenceSink):
    """One JSON file per chat inside a data directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    def path_for(self, chat_id: str) -> Path:
        """File for a chat; the id hash keeps ids that sanitize alike apart."""
        safe = re.sub(r"[^\w.-]+", "_", chat_id).strip("._") or "chat"
        digest = hashlib.sha256(chat_id.encode("utf-8")).hexdigest()[:10]
        return self._directory / f"{safe}-{digest}.json"

    async def load(self, chat_id: str) -> Optional[Any]:
        path = self.path_for(chat_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    async def save(self, chat_id: str, blob: dict[str, Any]) -> None:
        self._write(self.path_for(chat_id), blob)

    async def delete(self, chat_id: str) -> None:
        path = self.path_for(chat_id)
        if path.exists():
            path.unlink()

    @persist_retry
    def _write(self, path: Path, blob: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(blob, f, indent=2, ensure_ascii=False)
        tmp.replace(path)
        logger.debug("Wrote %s", path)
