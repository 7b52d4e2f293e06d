"""
WebSocket Endpoint：回合事件即時推播

連線後：
1. 先送一個 snapshot（目前回合狀態），斷線重連就是靠這個重新同步
2. 之後轉送 BroadcastChannel 的事件（round_opened / bet_placed / round_closed / status_tick）

這條連線只讀：下注走 POST /api/game/bet
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from core.broadcast import SNAPSHOT, QueueSubscriber, make_envelope

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)


async def _forward(websocket: WebSocket, subscriber: QueueSubscriber) -> None:
    while True:
        message = await subscriber.get()
        await websocket.send_json(message)


async def _drain(websocket: WebSocket) -> None:
    # 只用來偵測斷線；收到的內容不處理
    while True:
        await websocket.receive_text()


@router.websocket("/ws/rounds")
async def rounds_feed(websocket: WebSocket):
    await websocket.accept()
    engine = websocket.app.state.engine
    channel = engine.channel

    subscriber = QueueSubscriber(
        asyncio.get_running_loop(),
        maxsize=engine.settings.broadcast_queue_size
    )
    channel.subscribe(subscriber)

    tasks = []
    try:
        snapshot = await asyncio.to_thread(engine.status_snapshot)
        await websocket.send_json(make_envelope(SNAPSHOT, jsonable_encoder(snapshot)))

        tasks = [
            asyncio.create_task(_forward(websocket, subscriber)),
            asyncio.create_task(_drain(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.debug(f"WebSocket closed with error: {exc}")

    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        channel.unsubscribe(subscriber)
