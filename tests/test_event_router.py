"""
tests.test_event_router
~~~~~~~~~~~~~~~~~~~~~~~

``EventRouter`` 业务场景测试。

所有协作方都是 conftest 中的内存实现，连接通过 ``hub.admit()`` 真实握手，
推送通过假 WebSocket 收集，断言的是客户端实际收到的帧。
"""
from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from app.services.realtime_hub import RealtimeHub
from app.services.room import chat_room, review_room, service_room, user_room


async def flush(*connections: Any) -> None:
    for connection in connections:
        await connection.flush()


# ── 分派边界 ──────────────────────────────────────────────────────────

class TestDispatch:
    """帧解析、未知事件与异常转换。"""

    @pytest.mark.asyncio
    async def test_ack_correlated_by_ack_id(self, hub: RealtimeHub, connect: Any) -> None:
        alice, alice_ws = await connect("alice")
        raw = json.dumps({"event": "joinUserRoom", "data": None, "ackId": 42})

        result = await hub.router.handle(alice, raw)
        await flush(alice)

        assert result.is_success
        assert alice_ws.ack(42) == {"status": "success", "room": "user:alice"}

    @pytest.mark.asyncio
    async def test_malformed_frame_still_acked(self, hub: RealtimeHub, connect: Any) -> None:
        alice, alice_ws = await connect("alice")

        await hub.router.handle(alice, '{"ackId": 7}')
        await hub.router.handle(alice, "not json at all")
        await flush(alice)

        assert alice_ws.ack(7) == {"status": "error", "error": "Malformed frame", "code": "validation"}
        acks = alice_ws.events("ack")
        assert len(acks) == 2

    @pytest.mark.asyncio
    async def test_unknown_event(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "dropTables", {})
        assert result.to_payload() == {
            "status": "error", "error": "Unknown event: dropTables", "code": "validation",
        }

    @pytest.mark.asyncio
    async def test_collaborator_failure_is_generic(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        """协作方抛出的任意异常都变成通用的服务端错误，连接不受影响。"""
        alice, _ = await connect("alice")
        deps.users.get_by_id = AsyncMock(side_effect=RuntimeError("connection reset by peer"))

        result = await hub.router.dispatch(alice, "joinUserRoom")

        assert result.to_payload() == {"status": "error", "error": "Internal server error", "code": "server"}
        assert hub.is_connected(alice.id)

    @pytest.mark.asyncio
    async def test_events_after_disconnect_are_rejected(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        await hub.disconnect(alice.id, "client disconnect")

        result = await hub.router.dispatch(alice, "joinUserRoom")
        assert result.code == "not_connected"

    def test_supported_events(self, hub: RealtimeHub) -> None:
        assert {
            "joinUserRoom", "updateUser", "deleteUser", "updateLocation", "findNearbyServices",
            "joinChatRoom", "sendMessage", "markMessageAsRead", "joinServiceRoom", "createService",
            "updateService", "deleteService", "joinReviewRoom", "createReview", "updateReview",
            "deleteReview", "joinContactRoom", "createContact", "replyToContact", "leaveRoom",
        } == hub.router.events


# ── 用户 ──────────────────────────────────────────────────────────────

class TestUserEvents:
    """用户资料与账号删除。"""

    @pytest.mark.asyncio
    async def test_update_user_broadcasts_to_user_room(self, hub: RealtimeHub, connect: Any, users: Any) -> None:
        alice, alice_ws = await connect("alice")
        await hub.router.dispatch(alice, "joinUserRoom")

        result = await hub.router.dispatch(alice, "updateUser", {"name": "Alice B.", "avatarUrl": "https://x/a.png"})
        await flush(alice)

        assert result.is_success
        assert users.docs["alice"]["name"] == "Alice B."
        assert users.docs["alice"]["avatarUrl"] == "https://x/a.png"
        assert alice.user["name"] == "Alice B."
        [update] = alice_ws.events("userUpdated")
        assert update["userId"] == "alice"
        assert update["user"]["name"] == "Alice B."

    @pytest.mark.asyncio
    async def test_update_user_rejects_unknown_fields(self, hub: RealtimeHub, connect: Any, users: Any) -> None:
        alice, _ = await connect("alice")

        result = await hub.router.dispatch(alice, "updateUser", {"role": "admin"})

        assert result.code == "validation"
        assert users.docs["alice"]["role"] == "customer"

    @pytest.mark.asyncio
    async def test_update_user_requires_fields(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "updateUser", {})
        assert result.to_payload()["error"] == "No fields to update"

    @pytest.mark.asyncio
    async def test_delete_user_acks_then_disconnects(self, hub: RealtimeHub, connect: Any, users: Any) -> None:
        """删除账号：先收到 userDeleted 和 ack，然后连接被强制断开，后续事件被拒。"""
        alice, alice_ws = await connect("alice")
        bob, bob_ws = await connect("bob")
        await hub.router.dispatch(alice, "joinUserRoom")

        raw = json.dumps({"event": "deleteUser", "data": None, "ackId": 1})
        result = await hub.router.handle(alice, raw)

        assert result.is_success
        assert "alice" not in users.docs
        assert [frame["event"] for frame in alice_ws.sent] == ["userDeleted", "ack"]
        assert alice_ws.ack(1) == {"status": "success", "userId": "alice"}
        assert alice_ws.closed
        assert not hub.is_connected(alice.id)
        assert hub.registry.lookup("alice") is None

        await flush(bob)
        assert bob_ws.events("userDisconnected") == [{"userId": "alice", "reason": "user deleted"}]

        later = await hub.router.dispatch(alice, "joinUserRoom")
        assert later.code == "not_connected"

    @pytest.mark.asyncio
    async def test_delete_user_disconnects_newer_session(self, hub: RealtimeHub, connect: Any) -> None:
        old, _ = await connect("alice")
        new, new_ws = await connect("alice")

        await hub.router.handle(old, json.dumps({"event": "deleteUser", "ackId": 1}))

        assert not hub.is_connected(old.id)
        assert not hub.is_connected(new.id)
        assert new_ws.closed

    @pytest.mark.asyncio
    async def test_delete_user_disconnects_every_session(
        self, hub: RealtimeHub, connect: Any, deps: Any,
    ) -> None:
        """三个会话中从中间那个删除账号：最旧的（映射已被取代）也必须断开。"""
        oldest, oldest_ws = await connect("alice")
        middle, middle_ws = await connect("alice")
        newest, newest_ws = await connect("alice")
        bob, _ = await connect("bob")

        result = await hub.router.handle(middle, json.dumps({"event": "deleteUser", "ackId": 1}))

        assert result.is_success
        for conn, ws in ((oldest, oldest_ws), (middle, middle_ws), (newest, newest_ws)):
            assert not hub.is_connected(conn.id)
            assert ws.closed
        assert hub.connections_of("alice") == []
        assert hub.is_connected(bob.id)

        later = await hub.router.dispatch(oldest, "sendMessage", {"recipientId": "bob", "content": "still here?"})
        assert later.code == "not_connected"
        assert deps.chats.docs == {}


# ── 位置 ──────────────────────────────────────────────────────────────

class TestLocationEvents:
    """位置更新与附近服务。"""

    @pytest.mark.asyncio
    async def test_update_location(self, hub: RealtimeHub, connect: Any, users: Any) -> None:
        alice, alice_ws = await connect("alice")
        await hub.router.dispatch(alice, "joinUserRoom")

        result = await hub.router.dispatch(alice, "updateLocation", {"lat": 31.23, "lng": 121.47})
        await flush(alice)

        assert result.is_success
        assert users.docs["alice"]["location"] == {"lat": 31.23, "lng": 121.47}
        assert alice_ws.events("locationUpdated") == [
            {"userId": "alice", "location": {"lat": 31.23, "lng": 121.47}},
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [{"lat": "31.2", "lng": 121.4}, {"lat": 91, "lng": 0}, {"lat": 0}, None],
    )
    async def test_update_location_validation(self, hub: RealtimeHub, connect: Any, users: Any, payload: Any) -> None:
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "updateLocation", payload)
        assert result.code == "validation"
        assert "location" not in users.docs["alice"]

    @pytest.mark.asyncio
    async def test_find_nearby_services(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        alice, alice_ws = await connect("alice")
        near = await deps.services.create({"name": "Near", "location": {"lat": 31.2300, "lng": 121.4700}})
        nearer = await deps.services.create({"name": "Nearer", "location": {"lat": 31.2301, "lng": 121.4701}})
        await deps.services.create({"name": "Far", "location": {"lat": 39.90, "lng": 116.40}})
        await hub.router.dispatch(alice, "updateLocation", {"lat": 31.2301, "lng": 121.4701})

        result = await hub.router.dispatch(alice, "findNearbyServices", {"radius": 5000})
        await flush(alice)

        assert result.is_success
        [pushed] = alice_ws.events("nearbyServices")
        assert [s["id"] for s in pushed["services"]] == [nearer["id"], near["id"]]
        assert pushed["services"][0]["distance"] == 0

    @pytest.mark.asyncio
    async def test_find_nearby_requires_location(self, hub: RealtimeHub, connect: Any) -> None:
        alice, alice_ws = await connect("alice")
        result = await hub.router.dispatch(alice, "findNearbyServices", {})
        await flush(alice)
        assert result.code == "validation"
        assert alice_ws.events("nearbyServices") == []


# ── 聊天 ──────────────────────────────────────────────────────────────

class TestChatEvents:
    """两人聊天房间与离线推送。"""

    @pytest.mark.asyncio
    async def test_chat_room_is_shared_by_both_participants(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        bob, _ = await connect("bob")

        first = await hub.router.dispatch(alice, "joinChatRoom", {"recipientId": "bob"})
        second = await hub.router.dispatch(bob, "joinChatRoom", {"recipientId": "alice"})

        assert first.data["room"] == second.data["room"] == chat_room("alice", "bob")
        assert hub.rooms.members_of(chat_room("bob", "alice")) == frozenset({alice.id, bob.id})

    @pytest.mark.asyncio
    async def test_send_message_reaches_both(self, hub: RealtimeHub, connect: Any, deps: Any, notifier: Any) -> None:
        alice, alice_ws = await connect("alice")
        bob, bob_ws = await connect("bob")
        await hub.router.dispatch(alice, "joinChatRoom", {"recipientId": "bob"})
        await hub.router.dispatch(bob, "joinChatRoom", {"recipientId": "alice"})

        result = await hub.router.dispatch(alice, "sendMessage", {"recipientId": "bob", "content": "hello"})
        await flush(alice, bob)

        assert result.is_success
        message = result.data["message"]
        assert message["senderId"] == "alice"
        assert message["status"] == "sent"
        assert deps.chats.docs[message["id"]]["content"] == "hello"
        assert [m["content"] for m in alice_ws.events("newMessage")] == ["hello"]
        assert [m["content"] for m in bob_ws.events("newMessage")] == ["hello"]
        notifier.notify_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_offline_recipient_gets_push(self, hub: RealtimeHub, connect: Any, notifier: Any) -> None:
        alice, _ = await connect("alice")

        result = await hub.router.dispatch(alice, "sendMessage", {"recipientId": "bob", "content": "are you there?"})

        assert result.is_success
        notifier.notify_user.assert_awaited_once()
        recipient = notifier.notify_user.call_args.args[0]
        assert recipient["id"] == "bob"
        assert notifier.notify_user.call_args.kwargs["body"] == "are you there?"

    @pytest.mark.asyncio
    async def test_push_failure_does_not_fail_message(self, hub: RealtimeHub, connect: Any, notifier: Any) -> None:
        alice, _ = await connect("alice")
        notifier.notify_user.side_effect = RuntimeError("fcm unavailable")

        result = await hub.router.dispatch(alice, "sendMessage", {"recipientId": "bob", "content": "hi"})
        assert result.is_success

    @pytest.mark.asyncio
    async def test_unknown_recipient_persists_nothing(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        alice, alice_ws = await connect("alice")

        result = await hub.router.dispatch(alice, "sendMessage", {"recipientId": "mallory", "content": "hi"})
        await flush(alice)

        assert result.to_payload() == {"status": "error", "error": "Recipient not found", "code": "not_found"}
        assert deps.chats.docs == {}
        assert alice_ws.events("newMessage") == []

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "sendMessage", {"recipientId": "bob", "content": "   "})
        assert result.code == "validation"
        assert deps.chats.docs == {}

    @pytest.mark.asyncio
    async def test_mark_message_as_read(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        alice, alice_ws = await connect("alice")
        bob, _ = await connect("bob")
        await hub.router.dispatch(alice, "joinChatRoom", {"recipientId": "bob"})
        sent = await hub.router.dispatch(alice, "sendMessage", {"recipientId": "bob", "content": "hi"})
        message_id = sent.data["message"]["id"]

        result = await hub.router.dispatch(bob, "markMessageAsRead", {"messageId": message_id})
        await flush(alice)

        assert result.is_success
        assert deps.chats.docs[message_id]["status"] == "read"
        assert alice_ws.events("messageRead") == [{"messageId": message_id, "status": "read", "readBy": "bob"}]

    @pytest.mark.asyncio
    async def test_only_recipient_can_mark_as_read(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        alice, _ = await connect("alice")
        carol, _ = await connect("carol")
        sent = await hub.router.dispatch(alice, "sendMessage", {"recipientId": "bob", "content": "hi"})
        message_id = sent.data["message"]["id"]

        for outsider in (alice, carol):
            result = await hub.router.dispatch(outsider, "markMessageAsRead", {"messageId": message_id})
            assert result.code == "unauthorized"
        assert deps.chats.docs[message_id]["status"] == "sent"

    @pytest.mark.asyncio
    async def test_mark_unknown_message(self, hub: RealtimeHub, connect: Any) -> None:
        bob, _ = await connect("bob")
        result = await hub.router.dispatch(bob, "markMessageAsRead", {"messageId": "nope"})
        assert result.code == "not_found"


# ── 服务 ──────────────────────────────────────────────────────────────

SERVICE = {"name": "Deep Clean", "category": "cleaning", "price": 120, "description": "Whole flat"}


class TestServiceEvents:
    """服务的创建、更新与删除。"""

    @pytest.mark.asyncio
    async def test_create_service_broadcast(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        """创建者在服务房间收到 newService，其他所有连接收到 newServiceBroadcast。"""
        bob, bob_ws = await connect("bob")
        alice, alice_ws = await connect("alice")
        carol, carol_ws = await connect("carol")

        result = await hub.router.dispatch(bob, "createService", SERVICE)
        await flush(alice, bob, carol)

        assert result.is_success
        service = result.data["service"]
        assert service["providerId"] == "bob"
        assert deps.services.docs[service["id"]]["name"] == "Deep Clean"
        assert hub.rooms.is_member(service_room(service["id"]), bob.id)

        assert [s["id"] for s in bob_ws.events("newService")] == [service["id"]]
        assert bob_ws.events("newServiceBroadcast") == []
        expected = [{"serviceId": service["id"], "name": "Deep Clean"}]
        assert alice_ws.events("newServiceBroadcast") == expected
        assert carol_ws.events("newServiceBroadcast") == expected
        assert alice_ws.events("newService") == []

    @pytest.mark.asyncio
    async def test_create_service_validation(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        bob, _ = await connect("bob")
        result = await hub.router.dispatch(bob, "createService", {**SERVICE, "price": -1})
        assert result.code == "validation"
        assert deps.services.docs == {}

    @pytest.mark.asyncio
    async def test_update_service(self, hub: RealtimeHub, connect: Any) -> None:
        bob, _ = await connect("bob")
        alice, alice_ws = await connect("alice")
        created = await hub.router.dispatch(bob, "createService", SERVICE)
        service_id = created.data["service"]["id"]
        await hub.router.dispatch(alice, "joinServiceRoom", {"serviceId": service_id})

        result = await hub.router.dispatch(
            bob, "updateService", {"serviceId": service_id, "serviceData": {"price": 99.5}},
        )
        await flush(alice)

        assert result.is_success
        [updated] = alice_ws.events("serviceUpdated")
        assert updated["price"] == 99.5
        assert updated["name"] == "Deep Clean"

    @pytest.mark.asyncio
    async def test_update_missing_service(self, hub: RealtimeHub, connect: Any) -> None:
        bob, _ = await connect("bob")
        result = await hub.router.dispatch(
            bob, "updateService", {"serviceId": "ghost", "serviceData": {"price": 1}},
        )
        assert result.to_payload()["error"] == "Service not found"

    @pytest.mark.asyncio
    async def test_join_missing_service_room(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "joinServiceRoom", {"serviceId": "ghost"})
        assert result.code == "not_found"
        assert hub.rooms.room_count == 0

    @pytest.mark.asyncio
    async def test_delete_service_drops_room(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        bob, _ = await connect("bob")
        alice, alice_ws = await connect("alice")
        created = await hub.router.dispatch(bob, "createService", SERVICE)
        service_id = created.data["service"]["id"]
        await hub.router.dispatch(alice, "joinServiceRoom", {"serviceId": service_id})

        result = await hub.router.dispatch(bob, "deleteService", {"serviceId": service_id})
        await flush(alice)

        assert result.is_success
        assert service_id not in deps.services.docs
        assert alice_ws.events("serviceDeleted") == [{"serviceId": service_id}]
        assert hub.rooms.members_of(service_room(service_id)) == frozenset()
        assert service_room(service_id) not in hub.rooms.rooms_of(alice.id)


# ── 评价 ──────────────────────────────────────────────────────────────

class TestReviewEvents:
    """评价的创建、更新与删除。"""

    @pytest.mark.asyncio
    async def test_review_lifecycle(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        service = await deps.services.create({"name": "Deep Clean", "providerId": "bob"})
        bob, bob_ws = await connect("bob")
        alice, _ = await connect("alice")
        joined = await hub.router.dispatch(bob, "joinReviewRoom", {"serviceId": service["id"]})
        assert joined.data["room"] == review_room(service["id"])

        created = await hub.router.dispatch(
            alice, "createReview", {"serviceId": service["id"], "rating": 5, "comment": "Spotless"},
        )
        review_id = created.data["review"]["id"]
        updated = await hub.router.dispatch(
            alice, "updateReview", {"reviewId": review_id, "reviewData": {"rating": 4}},
        )
        deleted = await hub.router.dispatch(alice, "deleteReview", {"reviewId": review_id})
        await flush(bob)

        assert created.is_success and updated.is_success and deleted.is_success
        assert [r["rating"] for r in bob_ws.events("newReview")] == [5]
        assert [r["rating"] for r in bob_ws.events("reviewUpdated")] == [4]
        assert bob_ws.events("reviewDeleted") == [{"reviewId": review_id, "serviceId": service["id"]}]
        assert review_id not in deps.reviews.docs

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6, 4.5])
    async def test_rating_out_of_range(self, hub: RealtimeHub, connect: Any, deps: Any, rating: Any) -> None:
        service = await deps.services.create({"name": "Deep Clean"})
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "createReview", {"serviceId": service["id"], "rating": rating})
        assert result.code == "validation"
        assert deps.reviews.docs == {}

    @pytest.mark.asyncio
    async def test_review_for_missing_service(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "createReview", {"serviceId": "ghost", "rating": 3})
        assert result.code == "not_found"
        assert deps.reviews.docs == {}

    @pytest.mark.asyncio
    async def test_delete_missing_review(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "deleteReview", {"reviewId": "ghost"})
        assert result.to_payload()["error"] == "Review not found"


# ── 联系 ──────────────────────────────────────────────────────────────

class TestContactEvents:
    """联系表单与管理员回复。"""

    @pytest.mark.asyncio
    async def test_create_contact_notifies_online_admins(self, hub: RealtimeHub, connect: Any, deps: Any) -> None:
        root, root_ws = await connect("root")
        alice, _ = await connect("alice")

        result = await hub.router.dispatch(alice, "createContact", {"subject": "Refund", "message": "Please"})
        await flush(root)

        assert result.is_success
        contact = result.data["contact"]
        assert contact["status"] == "pending"
        assert deps.contacts.docs[contact["id"]]["email"] == "alice@example.com"
        assert root_ws.events("newContact") == [
            {"contactId": contact["id"], "subject": "Refund", "userId": "alice"},
        ]

    @pytest.mark.asyncio
    async def test_create_contact_without_admin_online(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        result = await hub.router.dispatch(alice, "createContact", {"subject": "Hi", "message": "Anyone?"})
        assert result.is_success

    @pytest.mark.asyncio
    async def test_admin_reply_reaches_contact_room(self, hub: RealtimeHub, connect: Any) -> None:
        root, _ = await connect("root")
        alice, alice_ws = await connect("alice")
        await hub.router.dispatch(alice, "joinContactRoom")
        created = await hub.router.dispatch(alice, "createContact", {"subject": "Refund", "message": "Please"})
        contact_id = created.data["contact"]["id"]

        result = await hub.router.dispatch(root, "replyToContact", {"contactId": contact_id, "reply": "Done"})
        await flush(alice)

        assert result.is_success
        assert result.data["contact"]["status"] == "replied"
        assert alice_ws.events("contactReplied") == [
            {"contactId": contact_id, "reply": "Done", "repliedBy": "root"},
        ]

    @pytest.mark.asyncio
    async def test_reply_requires_admin(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        created = await hub.router.dispatch(alice, "createContact", {"subject": "Refund", "message": "Please"})

        result = await hub.router.dispatch(
            alice, "replyToContact", {"contactId": created.data["contact"]["id"], "reply": "self-served"},
        )
        assert result.code == "unauthorized"


# ── 通用 ──────────────────────────────────────────────────────────────

class TestLeaveRoom:
    """离开已加入的房间。"""

    @pytest.mark.asyncio
    async def test_leave_joined_room(self, hub: RealtimeHub, connect: Any) -> None:
        alice, _ = await connect("alice")
        await hub.router.dispatch(alice, "joinUserRoom")

        result = await hub.router.dispatch(alice, "leaveRoom", {"room": user_room("alice")})
        assert result.is_success
        assert hub.rooms.rooms_of(alice.id) == frozenset()

        again = await hub.router.dispatch(alice, "leaveRoom", {"room": user_room("alice")})
        assert again.code == "not_found"
