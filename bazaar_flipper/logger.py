# bazaar_flipper/logger.py
import asyncio
import logging
import os
import sys
from typing import Any, List, Optional, TextIO

import aiofiles
from aiocsv import AsyncWriter

AUDIT_HEADER = ["time", "action", "product", "type", "amount", "price", "used_daily_limit"]


class AsyncAuditLogger:
    """
    Append-only CSV trail of every bazaar action the bot performs.
    Disk I/O runs on a background worker fed through an asyncio Queue, so the
    flip loop never waits on the filesystem.
    """
    def __init__(self, filepath: str):
        self.filepath = filepath
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Creates the directory and header row if missing, then starts the writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        if not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0:
            async with aiofiles.open(self.filepath, mode="a", newline="") as f:
                writer = AsyncWriter(f, dialect="unix")
                await writer.writerow(AUDIT_HEADER)
        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_action(self, row: List[Any]):
        await self._queue.put(row)

    async def _writer_worker(self):
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode="a", newline="") as f:
                    writer = AsyncWriter(f, dialect="unix")
                    await writer.writerow(row)
            except Exception as e:
                # Losing an audit row must not take the bot down
                print(f"AUDIT LOG FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()

    async def stop(self):
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        self._worker_task = None


def setup_console_logger(name: str, level: str, stream: TextIO = sys.stdout):
    """
    Sets up the standard Python logger for console output.
    The solver service passes stderr here since its stdout carries RPC frames.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(stream)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
