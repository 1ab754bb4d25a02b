"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替换 MongoDB、Firebase 等外部协作方，
并提供一个可脚本化的假 WebSocket，使实时层测试无需网络和数据库即可运行。
"""
from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Awaitable, Callable
from copy import deepcopy
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocketDisconnect

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.core.errors import AuthorizationError  # noqa: E402
from app.core.rate_limit import WebSocketRateLimiter  # noqa: E402
from app.db.base import new_id, utc_now  # noqa: E402
from app.services.collaborators import RealtimeDependencies  # noqa: E402
from app.services.connection import Connection  # noqa: E402
from app.services.map_service import MapService  # noqa: E402
from app.services.realtime_hub import RealtimeHub  # noqa: E402
from app.services.room import sorted_pair_key  # noqa: E402

Document = dict[str, Any]


# ── 内存版仓库 ────────────────────────────────────────────────────────

class InMemoryStore:
    """与 ``MongoRepository`` 行为一致的内存仓库：字符串 ``id``，返回副本。"""

    def __init__(self, docs: list[Document] | None = None) -> None:
        self.docs: dict[str, Document] = {doc["id"]: deepcopy(doc) for doc in docs or []}

    async def get_by_id(self, doc_id: str) -> Document | None:
        doc = self.docs.get(doc_id)
        return deepcopy(doc) if doc is not None else None

    async def _insert(self, fields: Document) -> Document:
        now = utc_now()
        doc = {**fields, "id": new_id(), "createdAt": now, "updatedAt": now}
        self.docs[doc["id"]] = doc
        return deepcopy(doc)

    async def _update(self, doc_id: str, changes: Document) -> Document | None:
        doc = self.docs.get(doc_id)
        if doc is None:
            return None
        doc.update(changes)
        doc["updatedAt"] = utc_now()
        return deepcopy(doc)

    async def delete(self, doc_id: str) -> bool:
        return self.docs.pop(doc_id, None) is not None


class FakeUserStore(InMemoryStore):
    async def update(self, user_id: str, changes: Document) -> Document | None:
        return await self._update(user_id, changes)

    async def update_location(self, user_id: str, lat: float, lng: float) -> Document | None:
        return await self._update(user_id, {"location": {"lat": lat, "lng": lng}})

    async def list_by_role(self, role: str, limit: int = 100) -> list[Document]:
        return [deepcopy(doc) for doc in self.docs.values() if doc.get("role") == role][:limit]


class FakeServiceStore(InMemoryStore):
    async def create(self, fields: Document) -> Document:
        return await self._insert(fields)

    async def update(self, service_id: str, changes: Document) -> Document | None:
        return await self._update(service_id, changes)

    async def find_within_box(
        self, min_lat: float, max_lat: float, min_lng: float, max_lng: float, limit: int = 500,
    ) -> list[Document]:
        hits = []
        for doc in self.docs.values():
            loc = doc.get("location") or {}
            if "lat" in loc and min_lat <= loc["lat"] <= max_lat and min_lng <= loc["lng"] <= max_lng:
                hits.append(deepcopy(doc))
        return hits[:limit]


class FakeReviewStore(InMemoryStore):
    async def create(self, fields: Document) -> Document:
        return await self._insert(fields)

    async def update(self, review_id: str, changes: Document) -> Document | None:
        return await self._update(review_id, changes)


class FakeChatStore(InMemoryStore):
    async def save_message(self, sender_id: str, recipient_id: str, content: str) -> Document:
        return await self._insert({
            "pairKey": sorted_pair_key(sender_id, recipient_id),
            "senderId": sender_id,
            "recipientId": recipient_id,
            "content": content,
            "status": "sent",
        })

    async def mark_as_read(self, message_id: str) -> Document | None:
        return await self._update(message_id, {"status": "read", "readAt": utc_now()})


class FakeContactStore(InMemoryStore):
    async def create(self, fields: Document) -> Document:
        return await self._insert({**fields, "status": "pending", "replies": []})

    async def add_reply(self, contact_id: str, reply: Document) -> Document | None:
        doc = self.docs.get(contact_id)
        if doc is None:
            return None
        doc["replies"].append(reply)
        doc["status"] = "replied"
        return deepcopy(doc)


class FakeTokenVerifier:
    """令牌 → 声明的静态映射，未知令牌视为无效。"""

    def __init__(self, tokens: dict[str, Document]) -> None:
        self.tokens = tokens
        self.calls: list[str] = []

    async def verify(self, token: str) -> Document:
        self.calls.append(token)
        claims = self.tokens.get(token)
        if claims is None:
            raise AuthorizationError("Invalid token")
        return claims


# ── 假 WebSocket ──────────────────────────────────────────────────────

class FakeWebSocket:
    """可脚本化的 WebSocket：``push()`` 模拟客户端发帧，``sent`` 记录服务端发出的帧。"""

    def __init__(
        self,
        user_id: str | None = None,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        app: Any = None,
    ) -> None:
        self.query_params: dict[str, str] = {}
        if user_id is not None:
            self.query_params["userId"] = user_id
        if token is not None:
            self.query_params["token"] = token
        self.headers: dict[str, str] = {k.lower(): v for k, v in (headers or {}).items()}
        self.app = app or SimpleNamespace(state=SimpleNamespace())
        self.sent: list[Document] = []
        self.accepted = False
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("WebSocket is closed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self.closed:
            raise RuntimeError("WebSocket is already closed")
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    async def receive_text(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise WebSocketDisconnect(code=self.close_code or 1000)
        return item

    # ── 测试辅助 ──

    def push(self, event: str, data: Any = None, ack_id: Any = None) -> None:
        """模拟客户端发送一个事件帧。"""
        self._inbox.put_nowait(json.dumps({"event": event, "data": data, "ackId": ack_id}))

    def push_raw(self, raw: str) -> None:
        self._inbox.put_nowait(raw)

    def hang_up(self) -> None:
        """模拟客户端断开。"""
        self._inbox.put_nowait(None)

    def events(self, name: str) -> list[Any]:
        """服务端发给本连接的某类事件的 ``data`` 列表。"""
        return [frame["data"] for frame in self.sent if frame["event"] == name]

    def ack(self, ack_id: Any) -> Document | None:
        for frame in self.sent:
            if frame["event"] == "ack" and frame.get("ackId") == ack_id:
                return frame["data"]
        return None


# ── fixtures ──────────────────────────────────────────────────────────

USERS: list[Document] = [
    {"id": "alice", "name": "Alice", "email": "alice@example.com", "role": "customer", "fcmToken": "fcm-alice"},
    {"id": "bob", "name": "Bob", "email": "bob@example.com", "role": "provider", "fcmToken": "fcm-bob"},
    {"id": "carol", "name": "Carol", "email": "carol@example.com", "role": "customer"},
    {"id": "root", "name": "Root", "email": "root@example.com", "role": "admin"},
]


@pytest.fixture()
def users() -> FakeUserStore:
    return FakeUserStore(USERS)


@pytest.fixture()
def verifier() -> FakeTokenVerifier:
    return FakeTokenVerifier({f"token-{user['id']}": {"uid": user["id"]} for user in USERS})


@pytest.fixture()
def notifier() -> MagicMock:
    mock = MagicMock()
    mock.notify_user = AsyncMock(return_value=True)
    return mock


@pytest.fixture()
def deps(users: FakeUserStore, verifier: FakeTokenVerifier, notifier: MagicMock) -> RealtimeDependencies:
    services = FakeServiceStore()
    return RealtimeDependencies(
        users=users,
        services=services,
        reviews=FakeReviewStore(),
        chats=FakeChatStore(),
        contacts=FakeContactStore(),
        maps=MapService(services, max_results=10),  # type: ignore[arg-type]
        verifier=verifier,
        notifier=notifier,
    )


@pytest.fixture()
def hub(deps: RealtimeDependencies) -> RealtimeHub:
    return RealtimeHub(
        deps,
        limiter=WebSocketRateLimiter(max_requests=100, window_seconds=60.0),
        drain_timeout=1.0,
    )


@pytest.fixture()
def make_websocket() -> type[FakeWebSocket]:
    """返回假 WebSocket 类，供测试自行构造握手参数。"""
    return FakeWebSocket


Connect = Callable[..., Awaitable[tuple[Connection, FakeWebSocket]]]


@pytest.fixture()
def connect(hub: RealtimeHub) -> Connect:
    """以指定用户完成握手，返回 ``(connection, websocket)``。"""

    async def _connect(user_id: str, token: str | None = None) -> tuple[Connection, FakeWebSocket]:
        ws = FakeWebSocket(user_id=user_id, token=token or f"token-{user_id}")
        connection = await hub.admit(ws)  # type: ignore[arg-type]
        assert connection is not None, f"{user_id} 握手失败"
        return connection, ws

    return _connect

