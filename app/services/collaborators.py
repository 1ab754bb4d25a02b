"""
app.services.collaborators
~~~~~~~~~~~~~~~~~~~~~~~~~~

实时层依赖的外部协作方接口，以及启动时注入的依赖容器。

实时层只通过这些 ``Protocol`` 访问数据库和 Firebase，
启动时由 ``build_dependencies()`` 组装好具体实现后一次性注入，
测试中则替换为内存实现。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.db.chat_repository import ChatRepository
from app.db.contact_repository import ContactRepository
from app.db.review_repository import ReviewRepository
from app.db.service_repository import ServiceRepository
from app.db.user_repository import UserRepository
from app.services.auth import FirebaseTokenVerifier
from app.services.map_service import MapService
from app.services.notifier import PushNotifier

Document = dict[str, Any]


class UserStore(Protocol):
    async def get_by_id(self, doc_id: str) -> Document | None: ...

    async def update(self, user_id: str, changes: Document) -> Document | None: ...

    async def update_location(self, user_id: str, lat: float, lng: float) -> Document | None: ...

    async def delete(self, doc_id: str) -> bool: ...

    async def list_by_role(self, role: str, limit: int = 100) -> list[Document]: ...


class ServiceStore(Protocol):
    async def get_by_id(self, doc_id: str) -> Document | None: ...

    async def create(self, fields: Document) -> Document: ...

    async def update(self, service_id: str, changes: Document) -> Document | None: ...

    async def delete(self, doc_id: str) -> bool: ...


class ReviewStore(Protocol):
    async def get_by_id(self, doc_id: str) -> Document | None: ...

    async def create(self, fields: Document) -> Document: ...

    async def update(self, review_id: str, changes: Document) -> Document | None: ...

    async def delete(self, doc_id: str) -> bool: ...


class ChatStore(Protocol):
    async def get_by_id(self, doc_id: str) -> Document | None: ...

    async def save_message(self, sender_id: str, recipient_id: str, content: str) -> Document: ...

    async def mark_as_read(self, message_id: str) -> Document | None: ...


class ContactStore(Protocol):
    async def get_by_id(self, doc_id: str) -> Document | None: ...

    async def create(self, fields: Document) -> Document: ...

    async def add_reply(self, contact_id: str, reply: Document) -> Document | None: ...


class NearbySearch(Protocol):
    async def find_nearby(self, location: Document, radius_m: float) -> list[Document]: ...


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> Document:
        """校验令牌并返回声明；无效或过期时抛出 ``AuthorizationError``。"""
        ...


class Notifier(Protocol):
    async def notify_user(
        self, user: Document, title: str, body: str, data: dict[str, str] | None = None,
    ) -> bool: ...


@dataclass
class RealtimeDependencies:
    """实时层的全部外部协作方。"""

    users: UserStore
    services: ServiceStore
    reviews: ReviewStore
    chats: ChatStore
    contacts: ContactStore
    maps: NearbySearch
    verifier: TokenVerifier
    notifier: Notifier


def build_dependencies(db: AsyncIOMotorDatabase) -> RealtimeDependencies:
    """用 MongoDB + Firebase 组装生产环境依赖。"""
    services = ServiceRepository(db)
    return RealtimeDependencies(
        users=UserRepository(db),
        services=services,
        reviews=ReviewRepository(db),
        chats=ChatRepository(db),
        contacts=ContactRepository(db),
        maps=MapService(services),
        verifier=FirebaseTokenVerifier(),
        notifier=PushNotifier(),
    )
