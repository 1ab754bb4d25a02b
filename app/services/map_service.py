"""
app.services.map_service
~~~~~~~~~~~~~~~~~~~~~~~~

附近服务搜索。

先按半径换算出经纬度包围盒交给服务仓库粗筛，再用 haversine 公式
计算精确距离、过滤并按距离升序排列。
"""
from __future__ import annotations

import math
from typing import Any

from app.core.logging import get_logger
from app.core.settings import settings
from app.db.service_repository import ServiceRepository

logger = get_logger(__name__)

EARTH_RADIUS_M: float = 6_371_000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """两点间的大圆距离（米）。"""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def bounding_box(lat: float, lng: float, radius_m: float) -> tuple[float, float, float, float]:
    """以 (lat, lng) 为中心、半径 ``radius_m`` 的外接经纬度矩形。

    Returns:
        ``(min_lat, max_lat, min_lng, max_lng)``。
    """
    d_lat = math.degrees(radius_m / EARTH_RADIUS_M)
    cos_lat = math.cos(math.radians(lat))
    # 极点附近经度跨度无意义，直接放开
    d_lng = 180.0 if cos_lat < 1e-12 else min(180.0, d_lat / cos_lat)
    return (
        max(-90.0, lat - d_lat),
        min(90.0, lat + d_lat),
        max(-180.0, lng - d_lng),
        min(180.0, lng + d_lng),
    )


class MapService:
    """附近服务搜索。

    Attributes:
        services: 服务仓库。
        max_results: 最多返回条数。
    """

    def __init__(self, services: ServiceRepository, max_results: int | None = None) -> None:
        self.services = services
        self.max_results = max_results or settings.NEARBY_MAX_RESULTS

    async def find_nearby(self, location: dict[str, Any], radius_m: float) -> list[dict[str, Any]]:
        """查找 ``location`` 周围 ``radius_m`` 米内的服务。

        Args:
            location: ``{"lat": ..., "lng": ...}``。
            radius_m: 搜索半径（米）。

        Returns:
            服务文档列表，每条附带 ``distance``（米，取整），按距离升序。
        """
        lat, lng = float(location["lat"]), float(location["lng"])
        candidates = await self.services.find_within_box(*bounding_box(lat, lng, radius_m))

        nearby: list[dict[str, Any]] = []
        for service in candidates:
            loc = service.get("location") or {}
            if "lat" not in loc or "lng" not in loc:
                continue
            distance = haversine_m(lat, lng, loc["lat"], loc["lng"])
            if distance <= radius_m:
                nearby.append({**service, "distance": round(distance)})

        nearby.sort(key=lambda s: s["distance"])
        logger.debug(
            "附近服务检索 | center=(%.5f, %.5f) | radius=%.0f | candidates=%d | hits=%d",
            lat, lng, radius_m, len(candidates), len(nearby),
        )
        return nearby[: self.max_results]
