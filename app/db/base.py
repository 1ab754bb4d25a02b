"""
app.db.base
~~~~~~~~~~~

各集合仓库的公共基类。

文档使用字符串 ``id`` 作为业务主键（uuid4 hex），查询时始终排除 ``_id``，
保证返回值可以直接 JSON 序列化后广播出去。索引在首次操作时惰性创建。
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.logging import get_logger

logger = get_logger(__name__)

Document = dict[str, Any]

_NO_OBJECT_ID: dict[str, int] = {"_id": 0}


def new_id() -> str:
    """生成新的文档 ID。"""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MongoRepository:
    """单集合仓库基类。

    子类声明 ``collection_name`` 和 ``indexes`` 即可获得基础的增删改查。

    Attributes:
        db: MongoDB 数据库实例。
    """

    collection_name: ClassVar[str]
    indexes: ClassVar[list[tuple[str, list[tuple[str, int]]]]] = []

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[self.collection_name]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index("id", name="idx_id", unique=True)
        for name, keys in self.indexes:
            await self._collection.create_index(keys, name=name)
        self._indexes_created = True
        logger.debug("%s 索引已就绪", self.collection_name)

    async def get_by_id(self, doc_id: str) -> Document | None:
        """按 ID 查询单个文档，不存在时返回 ``None``。"""
        await self._ensure_indexes()
        return await self._collection.find_one({"id": doc_id}, _NO_OBJECT_ID)

    async def _insert(self, fields: Document) -> Document:
        await self._ensure_indexes()
        now = utc_now()
        doc = {**fields, "id": new_id(), "createdAt": now, "updatedAt": now}
        await self._collection.insert_one(doc)
        doc.pop("_id", None)
        return doc

    async def _update(self, doc_id: str, changes: Document) -> Document | None:
        await self._ensure_indexes()
        return await self._collection.find_one_and_update(
            {"id": doc_id},
            {"$set": {**changes, "updatedAt": utc_now()}},
            projection=_NO_OBJECT_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def delete(self, doc_id: str) -> bool:
        """删除文档，返回是否确实删除了一条。"""
        await self._ensure_indexes()
        result = await self._collection.delete_one({"id": doc_id})
        return result.deleted_count == 1
