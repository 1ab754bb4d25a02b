"""
app.services.room
~~~~~~~~~~~~~~~~~

房间管理 —— 房间 ID 的推导规则与成员关系表。

五类房间以前缀区分:
  - ``user:<userId>``        用户个人房间
  - ``chat:<a>:<b>``         两人聊天房间（两个用户 ID 排序后拼接，与谁先加入无关）
  - ``service:<serviceId>``  服务详情房间
  - ``review:<serviceId>``   服务评价房间
  - ``contact:<userId>``     用户的联系/咨询房间

``RoomManager`` 只维护成员关系，不做实体存在性校验；
加入前的校验由 ``EventRouter`` 通过协作方完成。
"""
from __future__ import annotations

CHAT_KEY_DELIMITER: str = ":"


def sorted_pair_key(user_a: str, user_b: str) -> str:
    """两位参与者的会话键：字典序排序后拼接，保证 ``key(a, b) == key(b, a)``。"""
    return CHAT_KEY_DELIMITER.join(sorted((user_a, user_b)))


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def chat_room(user_a: str, user_b: str) -> str:
    return f"chat:{sorted_pair_key(user_a, user_b)}"


def service_room(service_id: str) -> str:
    return f"service:{service_id}"


def review_room(service_id: str) -> str:
    return f"review:{service_id}"


def contact_room(user_id: str) -> str:
    return f"contact:{user_id}"


class RoomManager:
    """房间 → 成员连接集合，以及连接 → 已加入房间的反向索引。

    房间在首次加入时创建，最后一个成员离开时删除。
    """

    def __init__(self) -> None:
        self._members: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}

    def join(self, room_id: str, connection_id: str) -> bool:
        """把连接加入房间。

        Returns:
            是否为新加入（已在房间内时返回 ``False``）。
        """
        members = self._members.setdefault(room_id, set())
        if connection_id in members:
            return False
        members.add(connection_id)
        self._memberships.setdefault(connection_id, set()).add(room_id)
        return True

    def leave(self, room_id: str, connection_id: str) -> bool:
        """把连接移出房间，房间空了就删除。

        Returns:
            连接之前是否在房间内。
        """
        members = self._members.get(room_id)
        if members is None or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._members[room_id]

        rooms = self._memberships.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._memberships[connection_id]
        return True

    def leave_all(self, connection_id: str) -> list[str]:
        """把连接移出它加入的所有房间（断开时调用）。

        Returns:
            连接离开的房间列表。
        """
        rooms = self._memberships.pop(connection_id, set())
        for room_id in rooms:
            members = self._members.get(room_id)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._members[room_id]
        return sorted(rooms)

    def remove_room(self, room_id: str) -> frozenset[str]:
        """直接删除整个房间（例如服务被删除后），返回原有成员。"""
        members = self._members.pop(room_id, set())
        for connection_id in members:
            rooms = self._memberships.get(connection_id)
            if rooms is not None:
                rooms.discard(room_id)
                if not rooms:
                    del self._memberships[connection_id]
        return frozenset(members)

    def members_of(self, room_id: str) -> frozenset[str]:
        return frozenset(self._members.get(room_id, ()))

    def rooms_of(self, connection_id: str) -> frozenset[str]:
        return frozenset(self._memberships.get(connection_id, ()))

    def is_member(self, room_id: str, connection_id: str) -> bool:
        return connection_id in self._members.get(room_id, ())

    @property
    def room_count(self) -> int:
        """当前非空房间数。"""
        return len(self._members)

    def clear(self) -> None:
        self._members.clear()
        self._memberships.clear()
