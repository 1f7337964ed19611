"""Diagnostic sink for raw responses that could not be parsed."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import structlog

from suppfacts.modules.extraction.recovery import Anomaly

logger = structlog.get_logger()


class DiagnosticSink(Protocol):
    async def record(self, item_id: str, raw_text: str, anomalies: list[Anomaly] | None = None) -> None: ...


class FileDiagnosticSink:
    """Writes ``failed-extraction-{item}-{timestamp}.txt`` under ``directory``.

    Write errors are logged and swallowed; a failed artifact never fails
    the extraction that produced it.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _write(self, path: Path, body: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")

    async def record(self, item_id: str, raw_text: str, anomalies: list[Anomaly] | None = None) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.directory / f"failed-extraction-{item_id}-{stamp}.txt"

        body = raw_text
        if anomalies:
            lines = [f"# {a.kind} at {a.position}: {a.context!r}" for a in anomalies]
            body = "\n".join(lines) + "\n\n" + raw_text

        try:
            await asyncio.to_thread(self._write, path, body)
        except OSError as exc:
            logger.error("Failed to save raw response", item_id=item_id, path=str(path), error=str(exc))
            return
        logger.info("Saved raw response for inspection", item_id=item_id, path=str(path))


class NullDiagnosticSink:
    async def record(self, item_id: str, raw_text: str, anomalies: list[Anomaly] | None = None) -> None:
        return None
