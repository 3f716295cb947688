"""
过期扫描定时任务
按固定间隔检查日期，每个自然日最多自动执行一次扫描；扫描在工作线程中执行，不阻塞事件循环
"""

import asyncio
import contextlib
import logging
import threading
from datetime import date
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ExpirationScheduler:
    """
    过期扫描调度器

    Args:
        sweep: 扫描函数，参数为当天日期
        interval_seconds: 检查间隔
        today: 时钟，测试时可注入固定日期
    """

    def __init__(self, sweep: Callable[[date], object],
                 interval_seconds: float = 600,
                 today: Callable[[], date] = None):
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self.today = today or date.today
        self.last_run_date: Optional[date] = None
        self._lock = threading.Lock()
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def run_now(self):
        """手动触发一次扫描，返回扫描报告"""
        with self._lock:
            run_date = self.today()
            report = self.sweep(run_date)
            self.last_run_date = run_date
            return report

    def run_if_due(self):
        """当天尚未执行过时执行扫描，否则返回 None"""
        with self._lock:
            run_date = self.today()
            if self.last_run_date == run_date:
                return None
            report = self.sweep(run_date)
            self.last_run_date = run_date
            return report

    async def _loop(self):
        while not self._stop.is_set():
            try:
                await asyncio.to_thread(self.run_if_due)
            except Exception:
                logger.exception("Expiration sweep failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self):
        if self._task is not None:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info("Expiration scheduler started, interval=%ss", self.interval_seconds)

    async def stop(self):
        if self._task is None:
            return
        self._stop.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Expiration scheduler stopped")
