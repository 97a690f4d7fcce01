"""Durable registry state as one JSON document."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import aiofiles
from loguru import logger

from interserver.core.errors import StorageFailure


class JsonGroupStore:
    """Whole-document store. Writes go to a temp file then replace the target."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    @property
    def _tmp(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    async def load_all(self) -> dict[str, Any]:
        """Stored state, or {} when nothing has been saved yet."""
        if not self.path.exists():
            logger.info("Store: {} not found; starting with no frequencies", self.path)
            return {}
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                raw = await f.read()
        except OSError as exc:
            raise StorageFailure(
                f"Cannot read {self.path}", code="read_failed", details={"path": str(self.path)}, original_error=exc
            ) from exc
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageFailure(
                f"Corrupt state file {self.path}",
                code="corrupt",
                details={"path": str(self.path)},
                original_error=exc,
            ) from exc
        if not isinstance(data, dict):
            raise StorageFailure(f"Unexpected state in {self.path}", code="corrupt", details={"path": str(self.path)})
        return data

    async def save_all(self, state: dict[str, Any]) -> None:
        payload = json.dumps(state, indent=2, ensure_ascii=False)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self._tmp, "w", encoding="utf-8") as f:
                await f.write(payload)
            os.replace(self._tmp, self.path)
        except OSError as exc:
            raise StorageFailure(
                f"Cannot write {self.path}", code="write_failed", details={"path": str(self.path)}, original_error=exc
            ) from exc
        logger.debug("Store: saved {} frequencies to {}", len(state.get("groups", {})), self.path)

    def save_sync(self, state: dict[str, Any]) -> None:
        """Blocking save for process exit, when the loop may already be gone."""
        payload = json.dumps(state, indent=2, ensure_ascii=False)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._tmp.write_text(payload, encoding="utf-8")
            os.replace(self._tmp, self.path)
        except OSError as exc:
            raise StorageFailure(
                f"Cannot write {self.path}", code="write_failed", details={"path": str(self.path)}, original_error=exc
            ) from exc
