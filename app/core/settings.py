"""
app.core.settings
~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Marketplace Realtime Backend", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")
    FRONTEND_URL: str = Field(
        default="http://localhost:3000",
        description="prod 环境允许的 CORS 来源",
    )

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = Field(default="mongodb://localhost:27017", description="MongoDB 连接串")
    MONGO_DB_NAME: str = Field(default="marketplace", description="数据库名称")

    # ── Firebase（身份校验 + 推送）────────────────────────────────────
    FIREBASE_PROJECT_ID: str | None = Field(default=None, description="Firebase 项目 ID")
    FIREBASE_CREDENTIALS_FILE: str | None = Field(
        default=None,
        description="服务账号 JSON 路径；为空时使用 Application Default Credentials",
    )

    # ── WebSocket 实时层 ──────────────────────────────────────────────
    WS_PATH: str = Field(default="/ws", description="WebSocket 端点路径")
    WS_CONNECT_TIMEOUT: float = Field(
        default=45.0,
        description="握手认证的最长等待时间（秒），超时即拒绝连接",
    )
    WS_RATE_LIMIT_MAX_REQUESTS: int = Field(
        default=100,
        description="单个连接在一个窗口内允许的最大请求数",
    )
    WS_RATE_LIMIT_WINDOW: float = Field(default=60.0, description="限流窗口长度（秒）")
    WS_QUEUE_SIZE: int = Field(default=50, description="单个连接待处理事件队列上限")
    WS_OUTBOX_SIZE: int = Field(
        default=1000,
        description="单个连接待发送帧上限，超过即视为对端消费过慢并断开",
    )
    WS_SHUTDOWN_DRAIN_TIMEOUT: float = Field(
        default=5.0,
        description="关闭时等待出站消息发送完毕的最长时间（秒）",
    )

    # ── 业务 ──────────────────────────────────────────────────────────
    NEARBY_DEFAULT_RADIUS: float = Field(default=10000.0, description="附近服务默认搜索半径（米）")
    NEARBY_MAX_RESULTS: int = Field(default=50, description="附近服务最多返回条数")
    ADMIN_ROLE: str = Field(default="admin", description="管理员角色名")

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
