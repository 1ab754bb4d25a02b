"""
app.db.contact_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

联系表单集合仓库。用户提交的咨询与管理员的回复都保存在同一文档中。
"""
from __future__ import annotations

from pymongo import ReturnDocument

from app.db.base import Document, MongoRepository, utc_now


class ContactRepository(MongoRepository):
    """``contacts`` 集合仓库。"""

    collection_name = "contacts"
    indexes = [("idx_user_time", [("userId", 1), ("createdAt", -1)])]

    async def create(self, fields: Document) -> Document:
        return await self._insert({**fields, "status": "pending", "replies": []})

    async def add_reply(self, contact_id: str, reply: Document) -> Document | None:
        """追加一条回复并把状态置为 ``replied``，返回更新后的文档。"""
        await self._ensure_indexes()
        now = utc_now()
        return await self._collection.find_one_and_update(
            {"id": contact_id},
            {
                "$push": {"replies": {**reply, "createdAt": now}},
                "$set": {"status": "replied", "updatedAt": now},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
