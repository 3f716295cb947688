from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # 数据库配置
    database_url: str = "duckdb://./data/mealsub.duckdb"

    # JWT配置
    jwt_secret_key: str = "your-secret-key"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7天

    # API配置
    api_title: str = "Meal Subscription API"
    api_version: str = "1.0.0"
    api_prefix: str = "/api/v1"

    # 日志
    log_level: str = "INFO"

    # 订阅业务配置
    currency: str = "AED"
    default_vendor_capacity: int = 50
    max_vendors_per_bundle: int = Field(4, ge=1, le=4)  # 不能超过数据库约束中的 4

    # 过期扫描任务
    sweep_enabled: bool = True
    sweep_interval_seconds: int = 600

    # 开发模式
    debug: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局设置实例
settings = Settings()
