#!/usr/bin/env python3
"""Append-only JSON Lines log of proxied exchanges, one file per day."""
import asyncio
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

PHASES = ('inbound', 'outbound')


class ExchangeLogger:
    """Writes ``{"ts", "phase", "data"}`` records to ``<log_dir>/YYYY-MM-DD.log``.

    Inside a running event loop records are queued and written by a single
    writer task, so concurrent requests never interleave partial lines.
    Outside a loop the write happens inline under a thread lock. Any failure
    is reported on the console and otherwise ignored; logging never fails a
    request.
    """

    def __init__(self, log_dir: Path, logger: Optional[logging.Logger] = None):
        self.log_dir = Path(log_dir)
        self.logger = logger or logging.getLogger('kbproxy.exchange')
        self._queue: Optional[asyncio.Queue] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._write_lock = threading.Lock()

    def log_file_for(self, when: datetime) -> Path:
        return self.log_dir / f"{when.strftime('%Y-%m-%d')}.log"

    def current_log_file(self) -> Path:
        return self.log_file_for(datetime.now())

    def record(self, phase: str, data: Any):
        """Queue one exchange record (or write it directly when no loop is running)."""
        if phase not in PHASES:
            self.logger.warning(f"Unknown exchange phase {phase!r}, recording anyway")

        entry = {
            'ts': datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
            'phase': phase,
            'data': data,
        }
        try:
            line = json.dumps(entry, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as exc:
            self.logger.error(f"Failed to serialise {phase} exchange record: {exc}")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self._write_line(line)
            return

        self._ensure_writer(loop)
        self._queue.put_nowait(line)

    def _ensure_writer(self, loop: asyncio.AbstractEventLoop):
        if self._loop is not loop or self._writer_task is None or self._writer_task.done():
            self._loop = loop
            self._queue = asyncio.Queue()
            self._writer_task = loop.create_task(self._writer())

    async def _writer(self):
        queue = self._queue
        while True:
            line = await queue.get()
            try:
                await asyncio.to_thread(self._write_line, line)
            finally:
                queue.task_done()

    def _ensure_log_dir(self) -> bool:
        """(Re)create the log directory and confirm it is writable."""
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self.logger.error(f"Failed to create log directory {self.log_dir}: {exc}")
            return False
        if not os.access(self.log_dir, os.W_OK):
            self.logger.error(f"No write permission for log directory {self.log_dir}")
            return False
        return True

    def _write_line(self, line: str):
        with self._write_lock:
            if not self._ensure_log_dir():
                self.logger.warning("File logging unavailable, exchange kept on console only")
                self.logger.info(line)
                return
            log_file = self.current_log_file()
            try:
                with open(log_file, 'a', encoding='utf-8') as f:
                    f.write(line + '\n')
            except OSError as exc:
                self.logger.error(f"Failed to write exchange log {log_file}: {exc}")

    async def flush(self):
        """Wait until every queued record has been written."""
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def aclose(self):
        """Drain the queue and stop the writer task."""
        await self.flush()
        task = self._writer_task
        self._writer_task = None
        if task is not None and not task.done() and self._loop is asyncio.get_running_loop():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


def read_records(log_file: Path) -> list:
    """Parse every JSON line of an exchange log file, skipping corrupt lines."""
    records: list[Dict[str, Any]] = []
    if not log_file.exists():
        return records
    with open(log_file, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return records
