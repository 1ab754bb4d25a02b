"""
app.db.user_repository
~~~~~~~~~~~~~~~~~~~~~~

用户集合仓库。账号的创建由认证流程负责，这里只提供实时层需要的读取和更新。
"""
from __future__ import annotations

from app.db.base import Document, MongoRepository


class UserRepository(MongoRepository):
    """``users`` 集合仓库。"""

    collection_name = "users"
    indexes = [("idx_role", [("role", 1)])]

    async def update(self, user_id: str, changes: Document) -> Document | None:
        """更新用户字段，返回更新后的文档；用户不存在时返回 ``None``。"""
        return await self._update(user_id, changes)

    async def update_location(self, user_id: str, lat: float, lng: float) -> Document | None:
        return await self._update(user_id, {"location": {"lat": lat, "lng": lng}})

    async def list_by_role(self, role: str, limit: int = 100) -> list[Document]:
        """按角色列出用户（如全部管理员）。"""
        await self._ensure_indexes()
        cursor = self._collection.find({"role": role}, {"_id": 0}).limit(limit)
        return await cursor.to_list(length=limit)
