"""
app.api.ws
~~~~~~~~~~

WebSocket 实时接口 —— 市场后端的在线状态与事件扇出。

握手时通过查询参数 ``userId`` / ``token``（或 ``Authorization: Bearer``）认证，
认证通过后客户端以 JSON 帧收发事件:

  - 入站: ``{"event": "sendMessage", "data": {...}, "ackId": 7}``
  - ack:   ``{"event": "ack", "ackId": 7, "data": {"status": "success", ...}}``
  - 推送: ``{"event": "newMessage", "data": {...}}``

接收与处理分为两个协程：接收端按到达时间限流并入队，处理端按顺序分派，
保证同一连接的事件严格串行处理。
"""
from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.api.deps import get_websocket_hub
from app.core.errors import RateLimitError
from app.core.logging import connection_id_ctx_var, get_logger
from app.core.settings import settings
from app.schemas.realtime_events import AckResult, peek_ack_id
from app.services.connection import Connection
from app.services.realtime_hub import RealtimeHub

logger = get_logger(__name__)

router: APIRouter = APIRouter()

REASON_CLIENT_DISCONNECT: str = "client disconnect"
REASON_TRANSPORT_ERROR: str = "transport error"
REASON_SERVER_DISCONNECT: str = "server disconnect"


async def serve_connection(hub: RealtimeHub, connection: Connection) -> str:
    """驱动一条已准入连接的收发循环，直到任一方结束。

    Returns:
        断开原因。
    """
    websocket = connection.websocket
    # 多留一个位置给结束信号
    queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=settings.WS_QUEUE_SIZE + 1)
    reason = REASON_SERVER_DISCONNECT

    async def receive_loop() -> None:
        nonlocal reason
        try:
            while True:
                raw: str = await websocket.receive_text()
                # 限流检查：按实际到达时间
                if not hub.limiter.is_allowed(connection.id):
                    logger.info("事件被限流 | user=%s", connection.user_id)
                    connection.send_ack(peek_ack_id(raw), AckResult.from_error(RateLimitError()))
                    continue
                if queue.qsize() >= settings.WS_QUEUE_SIZE:
                    logger.warning("WS 队列已满，丢弃事件 | user=%s", connection.user_id)
                    connection.send_ack(
                        peek_ack_id(raw),
                        AckResult.failure("Server busy, please retry", code=RateLimitError.kind),
                    )
                    continue
                queue.put_nowait(raw)
        except WebSocketDisconnect as e:
            reason = REASON_CLIENT_DISCONNECT
            logger.debug("客户端断开 | user=%s | code=%s", connection.user_id, e.code)
        except Exception as e:
            reason = REASON_TRANSPORT_ERROR
            logger.error("WebSocket 接收异常: %s | user=%s", e, connection.user_id, exc_info=True)
        finally:
            queue.put_nowait(None)

    async def process_loop() -> None:
        while True:
            raw = await queue.get()
            if raw is None:
                break
            await hub.router.handle(connection, raw)
            # 处理过程中连接被强制断开（例如账号被删除）
            if not hub.is_connected(connection.id):
                break

    receiver = asyncio.create_task(receive_loop(), name=f"ws-recv-{connection.id}")
    processor = asyncio.create_task(process_loop(), name=f"ws-proc-{connection.id}")
    try:
        done, pending = await asyncio.wait({receiver, processor}, return_when=asyncio.FIRST_COMPLETED)
        if processor not in done:
            # 接收端已结束，让处理端把队列里剩下的事件处理完
            await processor
        for task in pending:
            task.cancel()
        await asyncio.gather(receiver, processor, return_exceptions=True)
    except asyncio.CancelledError:
        receiver.cancel()
        processor.cancel()
        raise
    return reason


@router.websocket(settings.WS_PATH)
async def realtime_endpoint(
    websocket: WebSocket,
    hub: RealtimeHub = Depends(get_websocket_hub),
) -> None:
    """实时事件端点。认证失败时以 4401 关闭，不登记任何状态。"""
    connection = await hub.admit(websocket)
    if connection is None:
        return

    token = connection_id_ctx_var.set(connection.id)
    reason = REASON_SERVER_DISCONNECT
    try:
        reason = await serve_connection(hub, connection)
    finally:
        await hub.disconnect(connection.id, reason)
        connection_id_ctx_var.reset(token)
