"""
app.services.auth
~~~~~~~~~~~~~~~~~

Firebase 身份令牌校验。

实时层只消费令牌校验能力，令牌签发由前端 Firebase Auth 完成。
Firebase Admin SDK 是同步阻塞调用，统一放到线程池执行，避免卡住事件循环。
"""
from __future__ import annotations

import asyncio
from typing import Any

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin import exceptions as firebase_exceptions

from app.core.errors import AuthorizationError, CollaboratorError
from app.core.logging import get_logger
from app.core.settings import settings

logger = get_logger(__name__)


def init_firebase_app() -> firebase_admin.App:
    """初始化 Firebase Admin SDK（只初始化一次）。应在 lifespan startup 中调用。"""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options = {"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None
    if settings.FIREBASE_CREDENTIALS_FILE:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_FILE)
        logger.info("Firebase Admin 使用服务账号初始化 | project=%s", settings.FIREBASE_PROJECT_ID)
    else:
        cred = credentials.ApplicationDefault()
        logger.info("Firebase Admin 使用默认凭证初始化 | project=%s", settings.FIREBASE_PROJECT_ID)
    return firebase_admin.initialize_app(cred, options)


class FirebaseTokenVerifier:
    """基于 Firebase ID Token 的令牌校验器。

    Attributes:
        check_revoked: 是否同时检查令牌是否已被吊销（需要额外一次网络请求）。
    """

    def __init__(self, check_revoked: bool = True) -> None:
        self.check_revoked = check_revoked

    async def verify(self, token: str) -> dict[str, Any]:
        """校验令牌并返回解码后的声明。

        Raises:
            AuthorizationError: 令牌无效、过期、被吊销或对应账号被禁用。
            CollaboratorError: 无法获取 Google 公钥等基础设施故障。
        """
        try:
            return await asyncio.to_thread(
                firebase_auth.verify_id_token, token, check_revoked=self.check_revoked,
            )
        except firebase_auth.ExpiredIdTokenError as e:
            raise AuthorizationError("Token expired") from e
        except (
            firebase_auth.InvalidIdTokenError,
            firebase_auth.UserDisabledError,
            ValueError,
        ) as e:
            raise AuthorizationError("Invalid token") from e
        except firebase_exceptions.FirebaseError as e:
            raise CollaboratorError(f"Firebase 令牌校验失败: {e}") from e
