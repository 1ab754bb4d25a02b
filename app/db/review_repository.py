"""
app.db.review_repository
~~~~~~~~~~~~~~~~~~~~~~~~

服务评价集合仓库。
"""
from __future__ import annotations

from app.db.base import Document, MongoRepository


class ReviewRepository(MongoRepository):
    """``reviews`` 集合仓库。"""

    collection_name = "reviews"
    indexes = [("idx_service_time", [("serviceId", 1), ("createdAt", -1)])]

    async def create(self, fields: Document) -> Document:
        return await self._insert(fields)

    async def update(self, review_id: str, changes: Document) -> Document | None:
        return await self._update(review_id, changes)
