"""
app.schemas.realtime_events
~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 实时层的帧结构、ack 结果与各入站事件的载荷模型。

帧协议（均为 JSON 文本帧）:
  - 入站: ``{"event": "sendMessage", "data": {...}, "ackId": 7}``
  - ack:   ``{"event": "ack", "ackId": 7, "data": {"status": "success", ...}}``
  - 广播: ``{"event": "newMessage", "data": {...}}``

载荷字段在线上使用 camelCase（与前端一致），Python 侧为 snake_case。
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.core.errors import RealtimeError

AckId = int | str | None

EntityId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]
Text = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=5000)]
ShortText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]


# ── 帧 ────────────────────────────────────────────────────────────────

class InboundFrame(BaseModel):
    """客户端发来的事件帧。"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event: str = Field(..., min_length=1, max_length=64, description="事件名")
    data: Any = Field(default=None, description="事件载荷")
    ack_id: AckId = Field(default=None, alias="ackId", description="客户端的 ack 关联 ID")


def encode_frame(event: str, data: Any, ack_id: AckId = None, with_ack_id: bool = False) -> str:
    """把事件编码为 JSON 文本帧（``datetime`` 等会被转换为 ISO 字符串）。"""
    frame: dict[str, Any] = {"event": event}
    if with_ack_id:
        frame["ackId"] = ack_id
    frame["data"] = jsonable_encoder(data)
    return json.dumps(frame, ensure_ascii=False)


def peek_ack_id(raw: str) -> AckId:
    """尽力从原始文本里取出 ``ackId``，用于在帧无法完整解析时仍能回 ack。"""
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    if isinstance(frame, dict):
        ack_id = frame.get("ackId")
        if isinstance(ack_id, (int, str)) and not isinstance(ack_id, bool):
            return ack_id
    return None


def describe_validation_error(exc: PydanticValidationError) -> str:
    """把 pydantic 校验错误压缩成一句给客户端看的描述。"""
    errors = exc.errors()
    if not errors:
        return "Invalid payload"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


# ── ack 结果 ──────────────────────────────────────────────────────────

class AckResult(BaseModel):
    """事件处理结果，每个入站事件恰好回一次。

    Attributes:
        status: ``success`` 或 ``error``。
        data: 成功时附带的数据，展开到 ack 顶层。
        error: 失败时的简短描述。
        code: 失败时的错误类别（``RealtimeError.kind``）。
    """

    status: Literal["success", "error"]
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    code: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, **data: Any) -> AckResult:
        """快捷构造成功结果。"""
        return cls(status="success", data=data)

    @classmethod
    def failure(cls, message: str, code: str = "server") -> AckResult:
        """快捷构造失败结果。"""
        return cls(status="error", error=message, code=code)

    @classmethod
    def from_error(cls, exc: RealtimeError) -> AckResult:
        return cls.failure(exc.message, exc.kind)

    def to_payload(self) -> dict[str, Any]:
        """转换为线上格式：``{"status": "success", ...}`` 或 ``{"status": "error", "error": ...}``。"""
        if self.is_success:
            return {"status": "success", **self.data}
        return {"status": "error", "error": self.error, "code": self.code}


# ── 入站载荷 ──────────────────────────────────────────────────────────

class EventPayload(BaseModel):
    """入站载荷基类：camelCase 别名，拒绝未知字段。"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    def to_document(self) -> dict[str, Any]:
        """导出为数据库字段（camelCase，只包含客户端显式给出的字段）。"""
        return self.model_dump(by_alias=True, exclude_unset=True)


class GeoPoint(EventPayload):
    lat: float = Field(..., strict=True, ge=-90, le=90, description="纬度")
    lng: float = Field(..., strict=True, ge=-180, le=180, description="经度")


class UserUpdatePayload(EventPayload):
    """``updateUser``：可由用户本人修改的资料字段。"""

    name: ShortText | None = None
    phone: Annotated[str, StringConstraints(strip_whitespace=True, max_length=32)] | None = None
    address: Annotated[str, StringConstraints(strip_whitespace=True, max_length=500)] | None = None
    company: ShortText | None = None
    avatar_url: Annotated[str, StringConstraints(max_length=2048)] | None = None
    fcm_token: Annotated[str, StringConstraints(max_length=4096)] | None = None


class NearbyServicesPayload(EventPayload):
    radius: float | None = Field(default=None, gt=0, le=100_000, description="搜索半径（米）")


class RecipientPayload(EventPayload):
    recipient_id: EntityId


class SendMessagePayload(EventPayload):
    recipient_id: EntityId
    content: Text


class MessageRefPayload(EventPayload):
    message_id: EntityId


class ServiceRefPayload(EventPayload):
    service_id: EntityId


class ServiceCreatePayload(EventPayload):
    name: ShortText
    description: Annotated[str, StringConstraints(strip_whitespace=True, max_length=5000)] = ""
    category: ShortText
    price: float = Field(..., ge=0, description="价格")
    location: GeoPoint | None = None
    images: list[Annotated[str, StringConstraints(max_length=2048)]] = Field(default_factory=list, max_length=20)

    def to_document(self) -> dict[str, Any]:
        # 创建时需要把默认值也写入
        return self.model_dump(by_alias=True, exclude_none=True)


class ServiceChanges(EventPayload):
    name: ShortText | None = None
    description: Annotated[str, StringConstraints(strip_whitespace=True, max_length=5000)] | None = None
    category: ShortText | None = None
    price: float | None = Field(default=None, ge=0)
    location: GeoPoint | None = None
    images: list[Annotated[str, StringConstraints(max_length=2048)]] | None = Field(default=None, max_length=20)


class ServiceUpdatePayload(EventPayload):
    service_id: EntityId
    service_data: ServiceChanges


class ReviewCreatePayload(EventPayload):
    service_id: EntityId
    rating: int = Field(..., ge=1, le=5, description="评分 1-5")
    comment: Annotated[str, StringConstraints(strip_whitespace=True, max_length=2000)] = ""


class ReviewChanges(EventPayload):
    rating: int | None = Field(default=None, ge=1, le=5)
    comment: Annotated[str, StringConstraints(strip_whitespace=True, max_length=2000)] | None = None


class ReviewUpdatePayload(EventPayload):
    review_id: EntityId
    review_data: ReviewChanges


class ReviewRefPayload(EventPayload):
    review_id: EntityId


class ContactPayload(EventPayload):
    subject: ShortText
    message: Text


class ContactReplyPayload(EventPayload):
    contact_id: EntityId
    reply: Text


class LeaveRoomPayload(EventPayload):
    room: Annotated[str, StringConstraints(min_length=1, max_length=300)]
