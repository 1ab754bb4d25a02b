"""
app.db.chat_repository
~~~~~~~~~~~~~~~~~~~~~~

聊天消息持久化仓库 —— 封装 MongoDB ``chat_messages`` 集合的增查改操作。

每条消息一个文档（扁平设计），避免 16MB 文档限制且便于分页查询。
两位参与者之间的会话用排好序的 ``pairKey`` 标识，与实时层的聊天房间一一对应。
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal, TypedDict

from pymongo import ReturnDocument

from app.db.base import MongoRepository, utc_now
from app.services.room import sorted_pair_key

MessageStatus = Literal["sent", "read"]


class ChatMessage(TypedDict):
    """代表 MongoDB 中 chat_messages 集合的单条记录"""

    id: str
    pairKey: str
    senderId: str
    recipientId: str
    content: str
    status: MessageStatus
    createdAt: datetime
    updatedAt: datetime


class ChatRepository(MongoRepository):
    """聊天消息持久化仓库。"""

    collection_name = "chat_messages"
    # 复合索引：按会话分区 + 按时间排序
    indexes = [("idx_pair_time", [("pairKey", 1), ("createdAt", 1)])]

    async def save_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
    ) -> ChatMessage:
        """保存一条聊天消息并返回完整文档。

        Args:
            sender_id: 发送者用户 ID。
            recipient_id: 接收者用户 ID。
            content: 消息文本内容。
        """
        doc = await self._insert({
            "pairKey": sorted_pair_key(sender_id, recipient_id),
            "senderId": sender_id,
            "recipientId": recipient_id,
            "content": content,
            "status": "sent",
        })
        return doc  # type: ignore[return-value]

    async def mark_as_read(self, message_id: str) -> ChatMessage | None:
        """把消息标记为已读，消息不存在时返回 ``None``。"""
        await self._ensure_indexes()
        now = utc_now()
        return await self._collection.find_one_and_update(
            {"id": message_id},
            {"$set": {"status": "read", "readAt": now, "updatedAt": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
