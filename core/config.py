"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from pydantic import model_validator


class RedisSettings(BaseModel):
    # Celery broker / result backend
    url: Optional[str] = None


class DatabaseSettings(BaseModel):
    url: str = "sqlite:///./reconciler.db"
    echo: bool = False


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Storefront Payments Reconciler")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=True)
    ENVIRONMENT: str = Field(default="development")

    # 分组配置：Redis/Database 采用嵌套模型
    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    # 安全配置
    ENCRYPTION_KEY: Optional[str] = Field(
        default=None,
        description="商户凭证加密密钥，所有环境必须设置"
    )
    # 额外的历史密钥，仅用于解密（密钥轮换）
    ENCRYPTION_KEY_FALLBACKS: list[str] = Field(default_factory=list)
    BACKFILL_TOKEN: Optional[str] = Field(default=None)

    # 对外访问地址（用于生成支付回跳地址）
    APP_BASE_URL: str = Field(default="http://localhost:8000")

    # CORS配置
    CORS_ORIGINS: list = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
    )

    # 日志/请求体记录配置
    LOG_REQUEST_BODY_ENABLE_BY_DEFAULT: bool = Field(default=True)
    LOG_REQUEST_BODY_MAX_BYTES: int = Field(default=2048)
    LOG_REQUEST_BODY_ALLOW_MULTIPART: bool = Field(default=False)

    # pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _validate_encryption_key(self):
        # 凭证只以密文落库，缺少密钥时直接拒绝启动
        if not self.ENCRYPTION_KEY:
            raise ValueError(
                "ENCRYPTION_KEY 未配置。请在环境变量或 .env 中设置 ENCRYPTION_KEY"
            )
        return self

    @field_validator("CORS_ORIGINS", "ENCRYPTION_KEY_FALLBACKS", mode="before")
    @classmethod
    def _parse_str_list(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("[") and s.endswith("]"):
                import json
                try:
                    arr = json.loads(s)
                    if isinstance(arr, list):
                        return arr
                except ValueError:
                    pass
            if "," in s:
                return [item.strip() for item in s.split(",") if item.strip()]
            return [s]
        return v


settings = Settings()
