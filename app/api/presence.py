"""
app.api.presence
~~~~~~~~~~~~~~~~

在线状态 REST 接口 —— 供其他服务或后台查询实时层的当前状态。

端点:
  - ``GET /presence/{user_id}``   → 用户是否在线
  - ``GET /realtime/stats``       → 连接数、在线用户数、房间数
"""
from fastapi import APIRouter, Depends, Request

from app.api.deps import get_realtime_hub
from app.core.rate_limit import limiter
from app.schemas.api_response import ApiResponse
from app.schemas.presence import PresenceData, RealtimeStatsData
from app.services.realtime_hub import RealtimeHub

router: APIRouter = APIRouter()


@router.get("/presence/{user_id}", summary="查询用户在线状态", response_model=ApiResponse[PresenceData])
@limiter.limit("20/second")
async def user_presence(request: Request, user_id: str, hub: RealtimeHub = Depends(get_realtime_hub)):
    """返回指定用户当前是否有可达的实时连接。

    Args:
        user_id: 用户 ID。
    """
    return ApiResponse.ok(data=PresenceData(user_id=user_id, online=hub.is_online(user_id)))


@router.get("/realtime/stats", summary="实时层统计", response_model=ApiResponse[RealtimeStatsData])
@limiter.limit("5/second")
async def realtime_stats(request: Request, hub: RealtimeHub = Depends(get_realtime_hub)):
    """返回当前连接数、在线用户数和非空房间数。"""
    return ApiResponse.ok(data=RealtimeStatsData(**hub.stats()))
