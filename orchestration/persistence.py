import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from api.metrics import metrics
from orchestration.command_bus import Subscription
from orchestration.commands import AIDecision, Command, Error, OrderResult


logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192


class JsonlStore:
    """Append-only line-delimited JSON log with a bounded tail read."""

    def __init__(self, path, tail_limit: int = 256, chunk_size: int = CHUNK_SIZE):
        self.path = Path(path)
        self.tail_limit = int(tail_limit)
        self.chunk_size = max(1, int(chunk_size))

    def append(self, record: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record, default=str, separators=(",", ":"))
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def tail(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent records, oldest first. Reads backwards in chunks."""
        limit = self.tail_limit if limit is None else int(limit)
        if limit <= 0 or not self.path.exists():
            return []

        lines: List[bytes] = []
        with self.path.open("rb") as fh:
            fh.seek(0, os.SEEK_END)
            position = fh.tell()
            remainder = b""
            while position > 0 and len(lines) <= limit:
                step = min(self.chunk_size, position)
                position -= step
                fh.seek(position)
                chunk = fh.read(step) + remainder
                parts = chunk.split(b"\n")
                # First part may be a partial line; carry it to the next chunk.
                remainder = parts[0]
                lines.extend(reversed(parts[1:]))
            if remainder and position == 0:
                lines.append(remainder)

        records: List[Dict[str, Any]] = []
        for raw in lines:
            if len(records) >= limit:
                break
            raw = raw.strip()
            if not raw:
                continue
            try:
                record = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, ValueError):
                logger.debug("Skipping unparsable line in %s", self.path)
                continue
            if isinstance(record, dict):
                records.append(record)
        records.reverse()
        return records


class PersistenceLogger:
    """Writes trade, AI decision and error records from the bus, in bus order."""

    def __init__(
        self,
        subscription: Subscription,
        trade_store: JsonlStore,
        ai_store: JsonlStore,
        error_store: JsonlStore,
    ):
        self.subscription = subscription
        self.trade_store = trade_store
        self.ai_store = ai_store
        self.error_store = error_store
        self.written = 0

    @classmethod
    def stores_from_settings(cls, persistence: Dict[str, Any]):
        cfg = persistence or {}
        return (
            JsonlStore(cfg.get('trade_log', 'logs/trade_logs.jsonl'), cfg.get('trade_tail', 512)),
            JsonlStore(cfg.get('ai_log', 'logs/ai_decisions.jsonl'), cfg.get('ai_tail', 64)),
            JsonlStore(cfg.get('error_log', 'logs/error_logs.jsonl'), cfg.get('error_tail', 256)),
        )

    async def handle(self, command: Command) -> bool:
        if isinstance(command, OrderResult):
            store, record = self.trade_store, command.to_dict()
            record["type"] = "trade"
        elif isinstance(command, AIDecision):
            store, record = self.ai_store, command.record.to_dict()
            record["type"] = "ai_decision"
        elif isinstance(command, Error):
            store, record = self.error_store, command.to_dict()
            record["type"] = "error"
        else:
            return False
        record.pop("kind", None)
        try:
            # Appends are awaited one at a time so file order matches bus order.
            await asyncio.to_thread(store.append, record)
        except OSError as exc:
            # Nowhere left to report a write failure except the log.
            metrics.record_error("persistence")
            logger.error("Failed to append %s record to %s: %s", record["type"], store.path, exc)
            return False
        self.written += 1
        return True

    async def run(self):
        logger.info(
            "Persistence logger writing to %s, %s, %s",
            self.trade_store.path,
            self.ai_store.path,
            self.error_store.path,
        )
        async for command in self.subscription:
            await self.handle(command)
        logger.info("Persistence logger stopped after %s records", self.written)
