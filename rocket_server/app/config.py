from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def _env_bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    v = _env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


@dataclass(frozen=True)
class AliyunSmsSettings:
    access_key_id: Optional[str] = None
    access_key_secret: Optional[str] = None
    endpoint: str = "dysmsapi.aliyuncs.com"
    region_id: str = "cn-hangzhou"
    sign_name: str = "小火箭"
    template_code: str = "SMS_123456789"


@dataclass(frozen=True)
class OssStsSettings:
    access_key_id: Optional[str] = None
    access_key_secret: Optional[str] = None
    role_arn: Optional[str] = None
    bucket: str = "rocket-workshop"
    endpoint: str = "oss-cn-beijing.aliyuncs.com"
    region: str = "cn-beijing"
    duration_seconds: int = 3600


@dataclass(frozen=True)
class WeChatSettings:
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    session_url: str = "https://api.weixin.qq.com/sns/jscode2session"


@dataclass(frozen=True)
class AppleSettings:
    shared_secret: Optional[str] = None
    production_url: str = "https://buy.itunes.apple.com/verifyReceipt"
    sandbox_url: str = "https://sandbox.itunes.apple.com/verifyReceipt"


@dataclass(frozen=True)
class AuthSettings:
    service_role_key: Optional[str] = None
    anon_key: Optional[str] = None
    jwt_secret: str = "dev-secret-change-me"
    access_minutes: int = 60
    refresh_days: int = 14


@dataclass(frozen=True)
class HTTPSettings:
    timeout: float = 15.0
    connect_timeout: Optional[float] = None
    read_timeout: Optional[float] = None
    write_timeout: Optional[float] = None


@dataclass(frozen=True)
class Settings:
    """All runtime configuration, read once at process start.

    Components receive only the section they need; nothing below this module
    reads the environment directly.
    """

    database_url: str = "sqlite:///./rocket.db"
    log_level: str = "INFO"
    enable_test_endpoints: bool = False
    sms: AliyunSmsSettings = field(default_factory=AliyunSmsSettings)
    oss: OssStsSettings = field(default_factory=OssStsSettings)
    wechat: WeChatSettings = field(default_factory=WeChatSettings)
    apple: AppleSettings = field(default_factory=AppleSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    http: HTTPSettings = field(default_factory=HTTPSettings)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        if dotenv_path is None:
            base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
            dotenv_path = os.path.join(base_dir, ".env")
        load_dotenv(dotenv_path)
        return cls(
            database_url=_env("DATABASE_URL", "sqlite:///./rocket.db"),
            log_level=(_env("LOG_LEVEL", "INFO") or "INFO").upper(),
            enable_test_endpoints=_env_bool("ENABLE_TEST_ENDPOINTS"),
            sms=AliyunSmsSettings(
                access_key_id=_env("ALIBABA_CLOUD_ACCESS_KEY_ID"),
                access_key_secret=_env("ALIBABA_CLOUD_ACCESS_KEY_SECRET"),
                sign_name=_env("SMS_SIGN_NAME", "小火箭"),
                template_code=_env("SMS_TEMPLATE_CODE", "SMS_123456789"),
            ),
            oss=OssStsSettings(
                access_key_id=_env("OSS_ACCESS_KEY_ID"),
                access_key_secret=_env("OSS_ACCESS_KEY_SECRET"),
                role_arn=_env("OSS_ROLE_ARN"),
                bucket=_env("OSS_BUCKET", "rocket-workshop"),
                endpoint=_env("OSS_ENDPOINT", "oss-cn-beijing.aliyuncs.com"),
                region=_env("OSS_REGION", "cn-beijing"),
            ),
            wechat=WeChatSettings(
                app_id=_env("WECHAT_APP_ID"),
                app_secret=_env("WECHAT_APP_SECRET"),
            ),
            apple=AppleSettings(shared_secret=_env("APP_STORE_SHARED_SECRET")),
            auth=AuthSettings(
                service_role_key=_env("SERVICE_ROLE_KEY"),
                anon_key=_env("ANON_KEY"),
                jwt_secret=_env("JWT_SECRET", "dev-secret-change-me"),
                access_minutes=_env_int("JWT_ACCESS_MINUTES", 60),
                refresh_days=_env_int("JWT_REFRESH_DAYS", 14),
            ),
            http=HTTPSettings(
                timeout=_env_float("PROVIDER_HTTP_TIMEOUT", 15.0) or 15.0,
                connect_timeout=_env_float("PROVIDER_HTTP_CONNECT_TIMEOUT", None),
                read_timeout=_env_float("PROVIDER_HTTP_READ_TIMEOUT", None),
                write_timeout=_env_float("PROVIDER_HTTP_WRITE_TIMEOUT", None),
            ),
        )

    def missing(self) -> list[str]:
        """Names of secrets that are not configured."""
        checks = {
            "ALIBABA_CLOUD_ACCESS_KEY_ID": self.sms.access_key_id,
            "ALIBABA_CLOUD_ACCESS_KEY_SECRET": self.sms.access_key_secret,
            "OSS_ACCESS_KEY_ID": self.oss.access_key_id,
            "OSS_ACCESS_KEY_SECRET": self.oss.access_key_secret,
            "OSS_ROLE_ARN": self.oss.role_arn,
            "WECHAT_APP_ID": self.wechat.app_id,
            "WECHAT_APP_SECRET": self.wechat.app_secret,
            "APP_STORE_SHARED_SECRET": self.apple.shared_secret,
        }
        return [name for name, value in checks.items() if not value]
