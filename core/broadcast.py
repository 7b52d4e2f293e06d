"""
Broadcast Channel：把回合事件推播給所有觀察者

設計：
- subscribe / unsubscribe：每個觀察者實作 deliver(message)
- publish：包成固定格式的 envelope，逐一投遞
- 盡力投遞、至多一次：沒有重送、沒有 backlog。斷線重連的觀察者
  應該重新查詢目前回合，而不是等待漏掉的事件
- 單一觀察者投遞失敗只記 log，不影響其他觀察者，也不影響 RoundEngine

事件：
    round_opened  {round_id, period, open_time, close_time, duration}
    bet_placed    {round_id, period, category, value, amount, totals}
    round_closed  {round_id, period, outcome}
    status_tick   {round_id, period, time_remaining, totals}
"""
import asyncio
import threading
from typing import Any, Dict, List, Optional
import logging

from models import utcnow

logger = logging.getLogger(__name__)

EVENT_SCHEMA_VERSION = 1

ROUND_OPENED = "round_opened"
BET_PLACED = "bet_placed"
ROUND_CLOSED = "round_closed"
STATUS_TICK = "status_tick"
SNAPSHOT = "snapshot"


def isoformat(dt) -> Optional[str]:
    return dt.isoformat() + "Z" if dt is not None else None


def make_envelope(event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": event_type,
        "version": EVENT_SCHEMA_VERSION,
        "sent_at": isoformat(utcnow()),
        "payload": payload,
    }


class Subscriber:
    """觀察者介面"""

    def deliver(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError


class QueueSubscriber(Subscriber):
    """
    WebSocket 連線用的觀察者

    RoundEngine 在背景 thread 發布事件，WebSocket 在 event loop 上送出，
    所以透過 loop.call_soon_threadsafe 把訊息放進 asyncio.Queue。
    Queue 滿了就丟棄（至多一次，不阻塞發布端）。
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 100):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, message: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self._put, message)

    def _put(self, message: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Dropped {message['type']} for slow subscriber ({self.dropped} dropped)")

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()


class BroadcastChannel:
    """事件推播通道"""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber not in self._subscribers:
                self._subscribers.append(subscriber)
        logger.info(f"Subscriber connected ({self.subscriber_count} total)")

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
        logger.info(f"Subscriber disconnected ({self.subscriber_count} remaining)")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: str, payload: Dict[str, Any]) -> int:
        """
        發布事件給目前所有觀察者

        返回：
            成功投遞的觀察者數量
        """
        message = make_envelope(event_type, payload)
        with self._lock:
            targets = list(self._subscribers)

        delivered = 0
        for subscriber in targets:
            try:
                subscriber.deliver(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to deliver {event_type} to {subscriber!r}: {e}")
        return delivered


# ============ 事件內容 ============

def round_opened_payload(round_obj, duration: int) -> Dict[str, Any]:
    return {
        "round_id": round_obj.id,
        "period": round_obj.period,
        "open_time": isoformat(round_obj.open_time),
        "close_time": isoformat(round_obj.close_time),
        "duration": duration,
    }


def bet_placed_payload(wager, totals: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "round_id": wager.round_id,
        "period": wager.period,
        "category": wager.category.value,
        "value": wager.value,
        "amount": float(wager.amount),
        "totals": totals,
    }


def round_closed_payload(round_id: str, period: int, outcome) -> Dict[str, Any]:
    return {
        "round_id": round_id,
        "period": period,
        "outcome": outcome.as_dict(),
    }


def status_tick_payload(round_id: str, period: int, time_remaining: float, totals) -> Dict[str, Any]:
    return {
        "round_id": round_id,
        "period": period,
        "time_remaining": time_remaining,
        "totals": totals,
    }
