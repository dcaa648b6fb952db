# oraclearb/logger.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
import logging
import sys
import os
from datetime import datetime, timezone
from typing import List, Any, Optional

from .models import Position

AUDIT_HEADER = [
    'closed_at', 'position_id', 'token_id', 'state', 'close_reason',
    'reference_price', 'entry_size', 'take_profit', 'stop_loss',
    'entry_status', 'tp_status', 'sl_status', 'unhedged', 'anomalies',
]


class AsyncAuditLogger:
    """
    Non-blocking journal of finished positions.
    Decouples disk I/O from the trading loop using an asyncio Queue.
    """
    def __init__(self, filepath: str):
        self.filepath = filepath
        self._queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Creates the journal (with header if new) and starts the background writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0
        async with aiofiles.open(self.filepath, mode='a', newline='') as f:
            if is_new:
                await AsyncWriter(f, dialect='unix').writerow(AUDIT_HEADER)
        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_row(self, data: List[Any]):
        await self._queue.put(data)

    async def log_position(self, position: Position):
        """
        Queues one row describing a position that reached CLOSED or FAILED.
        """
        closed_at = position.closed_at or position.opened_at
        await self.log_row([
            datetime.fromtimestamp(closed_at, tz=timezone.utc).isoformat(),
            position.id,
            position.token_id,
            position.state.value,
            position.close_reason.value if position.close_reason else '',
            str(position.reference_price),
            str(position.entry_leg.size),
            str(position.take_profit_leg.limit_price),
            str(position.stop_loss_leg.limit_price),
            position.entry_leg.status.value,
            position.take_profit_leg.status.value,
            position.stop_loss_leg.status.value,
            position.unhedged,
            '; '.join(position.anomalies),
        ])

    async def _writer_worker(self):
        """
        Background consumer that writes to disk.
        """
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except OSError as e:
                # Journal failures must not take the engine down
                print(f"AUDIT LOG FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()

    async def stop(self):
        """
        Flushes queued rows, then stops the writer.
        """
        if self._worker_task is None:
            return
        await self._queue.join()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None


def setup_console_logger(name: str, level: str):
    """
    Sets up the standard Python logger for console output.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
