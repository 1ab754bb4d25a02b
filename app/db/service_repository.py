"""
app.db.service_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

服务（清洁、维修等商品）集合仓库。

服务的地理位置存为 ``location: {lat, lng}``，附近搜索先用经纬度包围盒
在库里粗筛，精确距离由 ``MapService`` 计算。
"""
from __future__ import annotations

from app.db.base import Document, MongoRepository


class ServiceRepository(MongoRepository):
    """``services`` 集合仓库。"""

    collection_name = "services"
    indexes = [
        ("idx_provider", [("providerId", 1)]),
        ("idx_location", [("location.lat", 1), ("location.lng", 1)]),
    ]

    async def create(self, fields: Document) -> Document:
        return await self._insert(fields)

    async def update(self, service_id: str, changes: Document) -> Document | None:
        return await self._update(service_id, changes)

    async def find_within_box(
        self,
        min_lat: float,
        max_lat: float,
        min_lng: float,
        max_lng: float,
        limit: int = 500,
    ) -> list[Document]:
        """查询落在经纬度包围盒内的服务。"""
        await self._ensure_indexes()
        cursor = self._collection.find(
            {
                "location.lat": {"$gte": min_lat, "$lte": max_lat},
                "location.lng": {"$gte": min_lng, "$lte": max_lng},
            },
            {"_id": 0},
        ).limit(limit)
        return await cursor.to_list(length=limit)
