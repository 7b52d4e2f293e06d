"""
回合排程器：驅動 RoundEngine 的計時

每一期只有一個排程點（封盤時間），由單一 task 持有：

    start() -> 等到封盤 -> close_and_settle() -> 等 grace -> start() -> ...

- start() 失敗（資料庫無法使用）：記 log，start_retry_seconds 後重試，不中斷 process
- close_and_settle() 失敗：記 log，backoff 後回到 start()，由 start() 的復原流程補開獎
- 另一個 task 每 status_tick_seconds 推播一次 status_tick

引擎的方法是同步的（SQLAlchemy Session），用 asyncio.to_thread 執行，避免卡住 event loop。
"""
import asyncio
from typing import List
import logging

from core.round_engine import RoundEngine

logger = logging.getLogger(__name__)


class RoundScheduler:
    """RoundEngine 的計時器"""

    def __init__(self, engine: RoundEngine):
        self.engine = engine
        self.settings = engine.settings
        self._tasks: List[asyncio.Task] = []

    async def run_once(self) -> None:
        """跑完一期：開盤、等待、封盤結算、grace"""
        try:
            current = await asyncio.to_thread(self.engine.start)
        except Exception as e:
            logger.error(f"Error starting round cycle: {e}", exc_info=True)
            await asyncio.sleep(self.settings.start_retry_seconds)
            return

        remaining = self.engine.get_time_remaining().total_seconds()
        logger.debug(f"Round {current.period} closes in {remaining:.1f}s")
        await asyncio.sleep(remaining)

        try:
            await asyncio.to_thread(self.engine.close_and_settle)
        except Exception as e:
            logger.error(f"Error closing round {current.period}: {e}", exc_info=True)
            await asyncio.sleep(self.settings.start_retry_seconds)
            return

        # 給前端一段時間顯示結果
        await asyncio.sleep(self.settings.round_grace_seconds)

    async def run(self) -> None:
        while True:
            await self.run_once()

    async def tick(self) -> None:
        """定期推播目前回合的剩餘時間與統計"""
        while True:
            await asyncio.sleep(self.settings.status_tick_seconds)
            try:
                await asyncio.to_thread(self.engine.publish_status)
            except Exception as e:
                logger.warning(f"Status tick failed: {e}")

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self.run(), name="round-engine"),
            asyncio.create_task(self.tick(), name="round-status-tick"),
        ]
        logger.info("Round scheduler started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Round scheduler stopped")

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)
