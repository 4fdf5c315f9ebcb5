from __future__ import annotations
from dataclasses import dataclass
import hmac
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .db import make_engine, make_session_factory, init_db
from .provider.aliyun import SmsClient, StsClient
from .provider.apple import AppleReceiptClient
from .provider.http import ProviderHTTP
from .provider.wechat import WeChatClient
from .services.auth_service import AuthService
from .services.identity import FederationService
from .services.receipt_service import ReceiptService
from .services.sms_service import SmsService
from .services.storage_service import StorageService


# Caller identity when a service/anon key is used instead of a user token
KEY_CALLER_ID = "test-user"


@dataclass
class Services:
    settings: Settings
    session_factory: sessionmaker
    http: ProviderHTTP
    auth: AuthService
    federation: FederationService
    receipts: ReceiptService
    sms: SmsService
    storage: StorageService


def build_services(
    settings: Settings,
    http: Optional[ProviderHTTP] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Services:
    """Construct every process-lifetime collaborator explicitly."""
    if session_factory is None:
        engine = make_engine(settings.database_url)
        init_db(engine)
        session_factory = make_session_factory(engine)
    http = http or ProviderHTTP(settings.http)
    auth = AuthService(session_factory, settings.auth)
    return Services(
        settings=settings,
        session_factory=session_factory,
        http=http,
        auth=auth,
        federation=FederationService(WeChatClient(http, settings.wechat), auth),
        receipts=ReceiptService(session_factory, AppleReceiptClient(http, settings.apple)),
        sms=SmsService(SmsClient(http, settings.sms)),
        storage=StorageService(StsClient(http, settings.oss), settings.oss),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def _matches(token: str, key: Optional[str]) -> bool:
    return bool(key) and hmac.compare_digest(token.encode("utf-8"), (key or "").encode("utf-8"))


def require_caller(request: Request) -> str:
    """Bearer auth accepting the service key, the anon key, or an issued access token."""
    auth = request.headers.get("Authorization")
    if not auth:
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = auth[7:].strip() if auth.lower().startswith("bearer ") else auth.strip()
    services = get_services(request)
    keys = services.settings.auth
    if _matches(token, keys.service_role_key) or _matches(token, keys.anon_key):
        return KEY_CALLER_ID
    user_id = services.auth.user_id_for_token(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id
