"""
app.schemas.presence
~~~~~~~~~~~~~~~~~~~~

在线状态 REST 接口的响应模型。
"""
from pydantic import BaseModel, Field


class PresenceData(BaseModel):
    """用户在线状态。"""

    user_id: str = Field(..., description="用户 ID")
    online: bool = Field(..., description="是否有可达的实时连接")


class RealtimeStatsData(BaseModel):
    """实时层运行统计。"""

    connections: int = Field(..., description="当前连接数")
    online_users: int = Field(..., description="在线用户数")
    rooms: int = Field(..., description="非空房间数")
    accepting: bool = Field(..., description="是否仍在接受新连接")
