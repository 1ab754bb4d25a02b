"""
app.services.auth_gate
~~~~~~~~~~~~~~~~~~~~~~

WebSocket 握手认证。

凭证只在握手时接受：``userId`` 来自查询参数，令牌来自查询参数 ``token``
或 ``Authorization: Bearer`` 头。连接建立后再补交的凭证一律不认。
任何失败都表现为同一个 ``AuthorizationError``，具体原因只写日志。
"""
from __future__ import annotations

import asyncio
from typing import Any

from fastapi import WebSocket

from app.core.errors import AuthorizationError
from app.core.logging import get_logger
from app.core.settings import settings
from app.services.collaborators import TokenVerifier, UserStore

logger = get_logger(__name__)


def extract_credentials(websocket: WebSocket) -> tuple[str | None, str | None]:
    """从握手请求中取出 ``(user_id, token)``，缺失的项为 ``None``。"""
    user_id = websocket.query_params.get("userId") or None
    token = websocket.query_params.get("token") or None
    if token is None:
        authorization = websocket.headers.get("authorization", "")
        scheme, _, credential = authorization.partition(" ")
        if scheme.lower() == "bearer" and credential.strip():
            token = credential.strip()
    return user_id, token


class AuthGate:
    """握手认证门。

    Attributes:
        users: 用户仓库，用于确认声明的用户存在。
        verifier: 令牌校验器。
        timeout: 认证最长耗时（秒），超时视为失败。
    """

    def __init__(
        self,
        users: UserStore,
        verifier: TokenVerifier,
        timeout: float | None = None,
    ) -> None:
        self.users = users
        self.verifier = verifier
        self.timeout = timeout if timeout is not None else settings.WS_CONNECT_TIMEOUT

    async def authenticate(self, user_id: str | None, token: str | None) -> dict[str, Any]:
        """校验握手凭证，返回已验证的用户文档。

        Raises:
            AuthorizationError: 凭证缺失、用户不存在、令牌无效/过期、
                协作方出错或超时。不做重试。
        """
        if not user_id or not token:
            raise AuthorizationError("Missing credentials")

        try:
            return await asyncio.wait_for(self._verify(user_id, token), self.timeout)
        except AuthorizationError:
            raise
        except asyncio.TimeoutError as e:
            raise AuthorizationError("Handshake timed out") from e
        except Exception as e:
            logger.error("握手认证时协作方出错 | user=%s | error=%s", user_id, e, exc_info=True)
            raise AuthorizationError() from e

    async def _verify(self, user_id: str, token: str) -> dict[str, Any]:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise AuthorizationError("Unknown user")

        claims = await self.verifier.verify(token)
        uid = claims.get("uid")
        if uid is not None and uid != user_id:
            raise AuthorizationError("Token does not belong to user")
        return user
