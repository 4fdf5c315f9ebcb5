from __future__ import annotations
from datetime import datetime
from typing import Optional, List, Literal, Dict
from pydantic import BaseModel, Field


# ===== 认证相关 DTO =====
class UserDTO(BaseModel):
    id: str
    email: str
    phone: Optional[str] = None
    displayName: Optional[str] = None
    createdAt: Optional[datetime] = None


class SessionDTO(BaseModel):
    accessToken: str
    refreshToken: str
    tokenType: str = "bearer"
    expiresIn: int = Field(description="访问令牌有效期（秒）")


class AuthResponseDTO(BaseModel):
    user: UserDTO
    session: SessionDTO
    openid: Optional[str] = None


class WeChatLoginBody(BaseModel):
    code: Optional[str] = None


class DebugLoginBody(BaseModel):
    phone: Optional[str] = None


# ===== 短信 =====
class SendSmsBody(BaseModel):
    phone: Optional[str] = None
    templateParam: Optional[Dict[str, str]] = None


class SmsResultDTO(BaseModel):
    success: bool = True
    message: str = "验证码发送成功"
    requestId: Optional[str] = None
    code: str


# ===== OSS STS =====
class OssStsBody(BaseModel):
    userId: Optional[str] = None
    appSlug: Optional[str] = None
    env: Optional[Literal["test", "prod"]] = None


class OssStsDTO(BaseModel):
    accessKeyId: str
    accessKeySecret: str
    securityToken: str
    expiration: str
    bucket: str
    endpoint: str
    region: str
    pathPrefix: str
    allowedOperations: List[str]


# ===== App Store 收据 =====
class VerifyReceiptBody(BaseModel):
    receiptData: Optional[str] = None
    excludeOldTransactions: bool = False


class MigratePurchaseBody(BaseModel):
    device_id: Optional[str] = None
    user_id: Optional[str] = None
    app_slug: Optional[str] = None
    receipt: Optional[str] = None
    product_id: Optional[str] = None
    platform: str = "ios"


class MigrateResultDTO(BaseModel):
    success: bool = True
    message: Optional[str] = None
