"""
app.services.event_router
~~~~~~~~~~~~~~~~~~~~~~~~~

入站事件路由 —— 用户、位置、聊天、服务、评价、联系六类事件的处理器。

每个处理器遵循同一模板:
  1. 校验载荷（pydantic 模型，失败即拒绝，不做任何修改）
  2. 通过仓库确认引用的实体存在
  3. 通过协作方完成业务修改
  4. 计算目标房间 / 用户
  5. 经 ``RealtimeHub`` 广播
  6. 返回 ``AckResult``，由 ``handle()`` 回送给发起连接

处理器内抛出的任何异常都在 ``dispatch()`` 边界转换为错误结果，
单个事件失败不会影响连接本身和其他连接。
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from app.core.errors import (
    AuthorizationError,
    CollaboratorError,
    NotConnectedError,
    NotFoundError,
    RealtimeError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.settings import settings
from app.schemas.realtime_events import (
    AckResult,
    ContactPayload,
    ContactReplyPayload,
    GeoPoint,
    InboundFrame,
    LeaveRoomPayload,
    MessageRefPayload,
    NearbyServicesPayload,
    RecipientPayload,
    ReviewCreatePayload,
    ReviewRefPayload,
    ReviewUpdatePayload,
    SendMessagePayload,
    ServiceCreatePayload,
    ServiceRefPayload,
    ServiceUpdatePayload,
    UserUpdatePayload,
    describe_validation_error,
    peek_ack_id,
)
from app.services.collaborators import Document, RealtimeDependencies
from app.services.connection import Connection
from app.services.room import (
    chat_room,
    contact_room,
    review_room,
    service_room,
    user_room,
)

if TYPE_CHECKING:
    from app.services.realtime_hub import RealtimeHub

logger = get_logger(__name__)

Handler = Callable[[Connection, Any], Awaitable[AckResult]]


class EventRouter:
    """把入站事件分派到对应处理器。

    Attributes:
        hub: 实时层总控，用于房间操作与广播。
        deps: 外部协作方（启动时注入）。
    """

    def __init__(self, hub: RealtimeHub, deps: RealtimeDependencies) -> None:
        self.hub = hub
        self.deps = deps
        self._handlers: dict[str, Handler] = {
            # 用户
            "joinUserRoom": self.join_user_room,
            "updateUser": self.update_user,
            "deleteUser": self.delete_user,
            # 位置
            "updateLocation": self.update_location,
            "findNearbyServices": self.find_nearby_services,
            # 聊天
            "joinChatRoom": self.join_chat_room,
            "sendMessage": self.send_message,
            "markMessageAsRead": self.mark_message_as_read,
            # 服务
            "joinServiceRoom": self.join_service_room,
            "createService": self.create_service,
            "updateService": self.update_service,
            "deleteService": self.delete_service,
            # 评价
            "joinReviewRoom": self.join_review_room,
            "createReview": self.create_review,
            "updateReview": self.update_review,
            "deleteReview": self.delete_review,
            # 联系
            "joinContactRoom": self.join_contact_room,
            "createContact": self.create_contact,
            "replyToContact": self.reply_to_contact,
            # 通用
            "leaveRoom": self.leave_room,
        }

    @property
    def events(self) -> frozenset[str]:
        """支持的入站事件名。"""
        return frozenset(self._handlers)

    # ── 分派 ──────────────────────────────────────────────────────────

    async def handle(self, connection: Connection, raw: str) -> AckResult:
        """处理一帧原始文本：解析、分派、回 ack，必要时执行强制断开。"""
        try:
            frame = InboundFrame.model_validate_json(raw)
        except PydanticValidationError:
            result = AckResult.from_error(ValidationError("Malformed frame"))
            connection.send_ack(peek_ack_id(raw), result)
            return result

        result = await self.dispatch(connection, frame.event, frame.data)
        connection.send_ack(frame.ack_id, result)

        if connection.pending_disconnect is not None:
            await self.hub.disconnect(connection.id, connection.pending_disconnect)
        return result

    async def dispatch(self, connection: Connection, event: str, data: Any = None) -> AckResult:
        """执行单个事件并把结果（包括任何异常）转换为 ``AckResult``。"""
        if not self.hub.is_connected(connection.id):
            return AckResult.from_error(NotConnectedError())

        handler = self._handlers.get(event)
        if handler is None:
            return AckResult.from_error(ValidationError(f"Unknown event: {event}"))

        try:
            return await handler(connection, data)
        except PydanticValidationError as e:
            message = describe_validation_error(e)
            logger.info("事件载荷校验失败 | event=%s | user=%s | %s", event, connection.user_id, message)
            return AckResult.from_error(ValidationError(message))
        except CollaboratorError as e:
            logger.error("协作方调用失败 | event=%s | user=%s | %s", event, connection.user_id, e.detail)
            return AckResult.from_error(e)
        except RealtimeError as e:
            logger.info(
                "事件处理被拒绝 | event=%s | user=%s | kind=%s | %s",
                event, connection.user_id, e.kind, e.message,
            )
            return AckResult.from_error(e)
        except Exception as e:
            logger.error(
                "事件处理异常 | event=%s | user=%s | error=%s",
                event, connection.user_id, e, exc_info=True,
            )
            return AckResult.from_error(CollaboratorError(str(e)))

    # ── 存在性校验 ────────────────────────────────────────────────────

    async def _require_user(self, user_id: str, message: str = "User not found") -> Document:
        user = await self.deps.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError(message)
        return user

    async def _require_service(self, service_id: str) -> Document:
        service = await self.deps.services.get_by_id(service_id)
        if service is None:
            raise NotFoundError("Service not found")
        return service

    async def _require_review(self, review_id: str) -> Document:
        review = await self.deps.reviews.get_by_id(review_id)
        if review is None:
            raise NotFoundError("Review not found")
        return review

    def _join(self, connection: Connection, room_id: str) -> AckResult:
        self.hub.rooms.join(room_id, connection.id)
        logger.info("加入房间 | user=%s | room=%s", connection.user_id, room_id)
        return AckResult.success(room=room_id)

    # ── 用户 ──────────────────────────────────────────────────────────

    async def join_user_room(self, connection: Connection, data: Any) -> AckResult:
        await self._require_user(connection.user_id)
        return self._join(connection, user_room(connection.user_id))

    async def update_user(self, connection: Connection, data: Any) -> AckResult:
        changes = UserUpdatePayload.model_validate(data or {}).to_document()
        if not changes:
            raise ValidationError("No fields to update")

        await self._require_user(connection.user_id)
        updated = await self.deps.users.update(connection.user_id, changes)
        if updated is None:
            raise NotFoundError("User not found")

        connection.user = updated
        self.hub.emit_to_room(
            user_room(connection.user_id), "userUpdated",
            {"userId": connection.user_id, "user": updated},
        )
        logger.info("用户资料已更新 | user=%s | fields=%s", connection.user_id, sorted(changes))
        return AckResult.success(user=updated)

    async def delete_user(self, connection: Connection, data: Any) -> AckResult:
        user_id = connection.user_id
        await self._require_user(user_id)
        if not await self.deps.users.delete(user_id):
            raise NotFoundError("User not found")

        self.hub.emit_to_room(user_room(user_id), "userDeleted", {"userId": user_id})
        logger.info("用户已删除 | user=%s", user_id)

        # 同一用户的其他会话（新旧都算）立即断开；当前连接在 ack 发出后由 handle() 断开
        for other in self.hub.connections_of(user_id):
            if other.id != connection.id:
                await self.hub.disconnect(other.id, "user deleted")
        connection.pending_disconnect = "user deleted"
        return AckResult.success(userId=user_id)

    # ── 位置 ──────────────────────────────────────────────────────────

    async def update_location(self, connection: Connection, data: Any) -> AckResult:
        point = GeoPoint.model_validate(data or {})
        await self._require_user(connection.user_id)
        updated = await self.deps.users.update_location(connection.user_id, point.lat, point.lng)
        if updated is None:
            raise NotFoundError("User not found")

        connection.user = updated
        location = {"lat": point.lat, "lng": point.lng}
        self.hub.emit_to_room(
            user_room(connection.user_id), "locationUpdated",
            {"userId": connection.user_id, "location": location},
        )
        return AckResult.success(location=location)

    async def find_nearby_services(self, connection: Connection, data: Any) -> AckResult:
        payload = NearbyServicesPayload.model_validate(data or {})
        user = await self._require_user(connection.user_id)
        location = user.get("location")
        if not location:
            raise ValidationError("User location is not set")

        radius = payload.radius or settings.NEARBY_DEFAULT_RADIUS
        services = await self.deps.maps.find_nearby(location, radius)
        connection.emit("nearbyServices", {"services": services})
        logger.info("附近服务已推送 | user=%s | count=%d", connection.user_id, len(services))
        return AckResult.success(services=services)

    # ── 聊天 ──────────────────────────────────────────────────────────

    async def join_chat_room(self, connection: Connection, data: Any) -> AckResult:
        payload = RecipientPayload.model_validate(data or {})
        await self._require_user(payload.recipient_id, "Recipient not found")
        return self._join(connection, chat_room(connection.user_id, payload.recipient_id))

    async def send_message(self, connection: Connection, data: Any) -> AckResult:
        payload = SendMessagePayload.model_validate(data or {})
        recipient = await self._require_user(payload.recipient_id, "Recipient not found")

        message = await self.deps.chats.save_message(
            connection.user_id, payload.recipient_id, payload.content,
        )
        room = chat_room(connection.user_id, payload.recipient_id)
        self.hub.emit_to_room(room, "newMessage", message)
        logger.info("消息已发送 | message=%s | room=%s", message.get("id"), room)

        if not self.hub.is_online(payload.recipient_id):
            await self._push_offline_message(recipient, connection, message)
        return AckResult.success(message=message)

    async def _push_offline_message(
        self, recipient: Document, connection: Connection, message: Document,
    ) -> None:
        sender_name = connection.user.get("name") or "New message"
        try:
            await self.deps.notifier.notify_user(
                recipient,
                title=sender_name,
                body=message["content"][:120],
                data={"type": "newMessage", "messageId": str(message.get("id", "")), "senderId": connection.user_id},
            )
        except Exception as e:
            # 推送失败不影响消息本身
            logger.warning("离线推送失败 | recipient=%s | error=%s", recipient.get("id"), e)

    async def mark_message_as_read(self, connection: Connection, data: Any) -> AckResult:
        payload = MessageRefPayload.model_validate(data or {})
        message = await self.deps.chats.get_by_id(payload.message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.get("recipientId") != connection.user_id:
            raise AuthorizationError("Only the recipient can mark a message as read")

        updated = await self.deps.chats.mark_as_read(payload.message_id)
        if updated is None:
            raise NotFoundError("Message not found")

        room = chat_room(updated["senderId"], updated["recipientId"])
        self.hub.emit_to_room(
            room, "messageRead",
            {"messageId": payload.message_id, "status": "read", "readBy": connection.user_id},
        )
        return AckResult.success(messageId=payload.message_id)

    # ── 服务 ──────────────────────────────────────────────────────────

    async def join_service_room(self, connection: Connection, data: Any) -> AckResult:
        payload = ServiceRefPayload.model_validate(data or {})
        await self._require_service(payload.service_id)
        return self._join(connection, service_room(payload.service_id))

    async def create_service(self, connection: Connection, data: Any) -> AckResult:
        payload = ServiceCreatePayload.model_validate(data or {})
        service = await self.deps.services.create(
            {**payload.to_document(), "providerId": connection.user_id},
        )
        room = service_room(service["id"])
        self.hub.rooms.join(room, connection.id)
        self.hub.emit_to_room(room, "newService", service)
        # 未订阅的客户端也需要发现新服务
        self.hub.broadcast(
            "newServiceBroadcast",
            {"serviceId": service["id"], "name": service.get("name")},
            exclude=connection.id,
        )
        logger.info("服务已创建 | service=%s | provider=%s", service["id"], connection.user_id)
        return AckResult.success(service=service)

    async def update_service(self, connection: Connection, data: Any) -> AckResult:
        payload = ServiceUpdatePayload.model_validate(data or {})
        changes = payload.service_data.to_document()
        if not changes:
            raise ValidationError("No fields to update")

        await self._require_service(payload.service_id)
        updated = await self.deps.services.update(payload.service_id, changes)
        if updated is None:
            raise NotFoundError("Service not found")

        self.hub.emit_to_room(service_room(payload.service_id), "serviceUpdated", updated)
        logger.info("服务已更新 | service=%s | user=%s", payload.service_id, connection.user_id)
        return AckResult.success(service=updated)

    async def delete_service(self, connection: Connection, data: Any) -> AckResult:
        payload = ServiceRefPayload.model_validate(data or {})
        await self._require_service(payload.service_id)
        if not await self.deps.services.delete(payload.service_id):
            raise NotFoundError("Service not found")

        room = service_room(payload.service_id)
        self.hub.emit_to_room(room, "serviceDeleted", {"serviceId": payload.service_id})
        self.hub.rooms.remove_room(room)
        logger.info("服务已删除 | service=%s | user=%s", payload.service_id, connection.user_id)
        return AckResult.success(serviceId=payload.service_id)

    # ── 评价 ──────────────────────────────────────────────────────────

    async def join_review_room(self, connection: Connection, data: Any) -> AckResult:
        payload = ServiceRefPayload.model_validate(data or {})
        await self._require_service(payload.service_id)
        return self._join(connection, review_room(payload.service_id))

    async def create_review(self, connection: Connection, data: Any) -> AckResult:
        payload = ReviewCreatePayload.model_validate(data or {})
        await self._require_service(payload.service_id)
        review = await self.deps.reviews.create({
            "userId": connection.user_id,
            "serviceId": payload.service_id,
            "rating": payload.rating,
            "comment": payload.comment,
        })
        self.hub.emit_to_room(review_room(payload.service_id), "newReview", review)
        logger.info("评价已创建 | review=%s | service=%s", review["id"], payload.service_id)
        return AckResult.success(review=review)

    async def update_review(self, connection: Connection, data: Any) -> AckResult:
        payload = ReviewUpdatePayload.model_validate(data or {})
        changes = payload.review_data.to_document()
        if not changes:
            raise ValidationError("No fields to update")

        await self._require_review(payload.review_id)
        updated = await self.deps.reviews.update(payload.review_id, changes)
        if updated is None:
            raise NotFoundError("Review not found")

        self.hub.emit_to_room(review_room(updated["serviceId"]), "reviewUpdated", updated)
        return AckResult.success(review=updated)

    async def delete_review(self, connection: Connection, data: Any) -> AckResult:
        payload = ReviewRefPayload.model_validate(data or {})
        review = await self._require_review(payload.review_id)
        if not await self.deps.reviews.delete(payload.review_id):
            raise NotFoundError("Review not found")

        self.hub.emit_to_room(
            review_room(review["serviceId"]), "reviewDeleted",
            {"reviewId": payload.review_id, "serviceId": review["serviceId"]},
        )
        return AckResult.success(reviewId=payload.review_id)

    # ── 联系 ──────────────────────────────────────────────────────────

    async def join_contact_room(self, connection: Connection, data: Any) -> AckResult:
        return self._join(connection, contact_room(connection.user_id))

    async def create_contact(self, connection: Connection, data: Any) -> AckResult:
        payload = ContactPayload.model_validate(data or {})
        contact = await self.deps.contacts.create({
            "userId": connection.user_id,
            "name": connection.user.get("name"),
            "email": connection.user.get("email"),
            "subject": payload.subject,
            "message": payload.message,
        })

        admins = await self.deps.users.list_by_role(settings.ADMIN_ROLE, limit=100)
        notice = {"contactId": contact["id"], "subject": payload.subject, "userId": connection.user_id}
        reached = sum(self.hub.emit_to_user(admin["id"], "newContact", notice) for admin in admins)
        logger.info("联系表单已提交 | contact=%s | 通知管理员 %d/%d", contact["id"], reached, len(admins))
        return AckResult.success(contact=contact)

    async def reply_to_contact(self, connection: Connection, data: Any) -> AckResult:
        if connection.user.get("role") != settings.ADMIN_ROLE:
            raise AuthorizationError("Admin role required")

        payload = ContactReplyPayload.model_validate(data or {})
        contact = await self.deps.contacts.get_by_id(payload.contact_id)
        if contact is None:
            raise NotFoundError("Contact not found")

        updated = await self.deps.contacts.add_reply(
            payload.contact_id, {"authorId": connection.user_id, "message": payload.reply},
        )
        if updated is None:
            raise NotFoundError("Contact not found")

        self.hub.emit_to_room(
            contact_room(contact["userId"]), "contactReplied",
            {"contactId": payload.contact_id, "reply": payload.reply, "repliedBy": connection.user_id},
        )
        return AckResult.success(contact=updated)

    # ── 通用 ──────────────────────────────────────────────────────────

    async def leave_room(self, connection: Connection, data: Any) -> AckResult:
        payload = LeaveRoomPayload.model_validate(data or {})
        if not self.hub.rooms.leave(payload.room, connection.id):
            raise NotFoundError("Not a member of this room")
        return AckResult.success(room=payload.room)
