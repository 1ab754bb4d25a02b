"""
app.services.notifier
~~~~~~~~~~~~~~~~~~~~~

基于 Firebase Cloud Messaging 的推送通知。

用户离线（没有活跃 WebSocket 连接）时，实时层通过它把关键事件推到设备上。
推送属于尽力而为：失败只记日志，不影响触发它的业务事件。
"""
from __future__ import annotations

import asyncio
from typing import Any

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from app.core.logging import get_logger

logger = get_logger(__name__)


class PushNotifier:
    """FCM 推送发送器。用户文档中的 ``fcmToken`` 字段为设备令牌。"""

    async def notify_user(
        self,
        user: dict[str, Any],
        title: str,
        body: str,
        data: dict[str, str] | None = None,
    ) -> bool:
        """向用户设备发送一条推送。

        Args:
            user: 目标用户文档。
            title: 通知标题。
            body: 通知正文。
            data: 附带的键值数据（FCM 只接受字符串值）。

        Returns:
            是否成功提交给 FCM。用户没有设备令牌时返回 ``False``。
        """
        token = user.get("fcmToken")
        if not token:
            logger.debug("用户未登记推送令牌，跳过推送 | user=%s", user.get("id"))
            return False

        message = messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data=data or {},
        )
        try:
            message_id = await asyncio.to_thread(messaging.send, message)
        except (firebase_exceptions.FirebaseError, ValueError) as e:
            logger.warning("推送发送失败 | user=%s | error=%s", user.get("id"), e)
            return False

        logger.info("推送已发送 | user=%s | message_id=%s", user.get("id"), message_id)
        return True
