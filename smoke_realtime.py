"""
实时层冒烟脚本 —— 对一个正在运行的服务做端到端检查。

用法::

    python smoke_realtime.py --user-a <uid> --token-a <idToken> --user-b <uid> --token-b <idToken>

检查项:
  1. ``/health`` 与 ``/api/realtime/stats``
  2. 两个用户分别建立 WebSocket 连接并加入同一个聊天房间
  3. A 发送消息，A、B 都收到 ``newMessage``
  4. 错误令牌的握手被拒绝（关闭码 4401）
"""
from __future__ import annotations

import argparse
import asyncio
import itertools
import json
from typing import Any

import httpx
import websockets

_ack_ids = itertools.count(1)


async def call(ws: Any, event: str, data: Any = None) -> dict[str, Any]:
    """发送事件并等待对应的 ack，期间收到的其他推送直接打印。"""
    ack_id = next(_ack_ids)
    await ws.send(json.dumps({"event": event, "data": data, "ackId": ack_id}))
    while True:
        frame = json.loads(await asyncio.wait_for(ws.recv(), timeout=10))
        if frame["event"] == "ack" and frame.get("ackId") == ack_id:
            return frame["data"]
        print(f"  <- {frame['event']}: {frame['data']}")


async def wait_for_event(ws: Any, event: str) -> Any:
    while True:
        frame = json.loads(await asyncio.wait_for(ws.recv(), timeout=10))
        if frame["event"] == event:
            return frame["data"]


async def main(args: argparse.Namespace) -> None:
    http_base = args.base_url.rstrip("/")
    ws_base = http_base.replace("http", "ws", 1) + args.ws_path

    async with httpx.AsyncClient(base_url=http_base, timeout=10) as client:
        health = (await client.get("/health")).json()
        print("[1] health:", health["status"], health.get("realtime"))

    url_a = f"{ws_base}?userId={args.user_a}&token={args.token_a}"
    url_b = f"{ws_base}?userId={args.user_b}&token={args.token_b}"
    async with websockets.connect(url_a) as ws_a, websockets.connect(url_b) as ws_b:
        print("[2] join:", await call(ws_a, "joinChatRoom", {"recipientId": args.user_b}))
        print("    join:", await call(ws_b, "joinChatRoom", {"recipientId": args.user_a}))

        ack = await call(ws_a, "sendMessage", {"recipientId": args.user_b, "content": "smoke test"})
        received = await wait_for_event(ws_b, "newMessage")
        print("[3] send:", ack["status"], "| B received:", received["content"])

        async with httpx.AsyncClient(base_url=http_base, timeout=10) as client:
            stats = (await client.get("/api/realtime/stats")).json()
            print("    stats:", stats["data"])

    try:
        async with websockets.connect(f"{ws_base}?userId={args.user_a}&token=forged") as ws:
            await ws.recv()
        print("[4] FAILED: forged token was accepted")
    except websockets.exceptions.ConnectionClosed as e:
        print("[4] forged token rejected, close code:", e.rcvd.code if e.rcvd else None)
    except websockets.exceptions.InvalidStatus as e:
        print("[4] forged token rejected at HTTP level:", e.response.status_code)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="实时层冒烟测试")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--ws-path", default="/ws")
    parser.add_argument("--user-a", required=True)
    parser.add_argument("--token-a", required=True)
    parser.add_argument("--user-b", required=True)
    parser.add_argument("--token-b", required=True)
    asyncio.run(main(parser.parse_args()))
