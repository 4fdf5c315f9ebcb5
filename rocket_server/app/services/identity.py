from __future__ import annotations
from dataclasses import dataclass, field, replace
import enum
import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

from ..models.dto import AuthResponseDTO
from ..provider.errors import ConfigMissing, FederationFailed
from ..provider.wechat import WeChatClient
from .auth_service import AuthService, AlreadyRegistered, IdentityStoreError, UserNotFound


logger = logging.getLogger(__name__)

# Reserved namespace: real users can never register addresses under it
SYNTHETIC_DOMAIN = "rocket-workshop.anonymous"
TEST_DOMAIN = "test.rocket"


@dataclass(frozen=True)
class FederatedIdentity:
    provider: str
    subject_id: str
    email: str
    password: str = field(repr=False)
    phone: Optional[str] = None
    display_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)


def derive_password(subject_id: str, provider_secret: str) -> str:
    return hmac.new(
        provider_secret.encode("utf-8"),
        subject_id.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def derive_identity(subject_id: str, provider_secret: Optional[str], provider: str = "wechat") -> FederatedIdentity:
    """Synthetic credentials for a third-party subject.

    Both fields are pure functions of ``(subject_id, provider_secret)``, so
    they are recomputed on every login and never stored.
    """
    if not provider_secret:
        raise ConfigMissing(f"{provider} provider secret not set")
    if not subject_id:
        raise ValueError("subject id is required")
    return FederatedIdentity(
        provider=provider,
        subject_id=subject_id,
        email=f"{provider}_{subject_id}@{SYNTHETIC_DOMAIN}",
        password=derive_password(subject_id, provider_secret),
    )


def derive_test_identity(phone: str) -> FederatedIdentity:
    formatted = phone if phone.startswith("+") else f"+86{phone}"
    return FederatedIdentity(
        provider="phone",
        subject_id=formatted,
        email=f"{formatted.lstrip('+')}@{TEST_DOMAIN}",
        password=f"test_{formatted}",
        phone=formatted,
        metadata={"is_test_user": True},
    )


class LoginState(str, enum.Enum):
    SIGNING_IN = "signing_in"
    CREATING = "creating"
    SIGNED_IN = "signed_in"
    FAILED = "failed"


class FederatedLogin:
    """Sign in, else create then sign in, as an explicit state machine.

    Creation runs at most once. A creation that loses a race to a
    concurrent login ("already registered") loops back to signing in.
    """

    def __init__(self, store: AuthService, identity: FederatedIdentity):
        self.store = store
        self.identity = identity
        self.state = LoginState.SIGNING_IN
        self.history: List[LoginState] = [self.state]
        self.created = False
        self.result: Optional[AuthResponseDTO] = None
        self.error: Optional[str] = None

    def _go(self, state: LoginState) -> None:
        self.state = state
        self.history.append(state)

    def _fail(self, reason: str) -> None:
        self.error = reason
        self._go(LoginState.FAILED)

    def step(self) -> LoginState:
        ident = self.identity
        if self.state == LoginState.SIGNING_IN:
            try:
                self.result = self.store.sign_in(ident.email, ident.password)
                self._go(LoginState.SIGNED_IN)
            except UserNotFound:
                if self.created:
                    self._fail("Sign in failed after account creation")
                else:
                    self._go(LoginState.CREATING)
            except IdentityStoreError as e:
                self._fail(f"Sign in failed: {e.__class__.__name__}")
        elif self.state == LoginState.CREATING:
            self.created = True
            try:
                self.store.create_user(
                    ident.email,
                    ident.password,
                    phone=ident.phone,
                    display_name=ident.display_name,
                    metadata=ident.metadata,
                )
                self._go(LoginState.SIGNING_IN)
            except AlreadyRegistered:
                logger.info("%s account created concurrently, signing in again", ident.provider)
                self._go(LoginState.SIGNING_IN)
            except IdentityStoreError as e:
                self._fail(f"Create User Failed: {e}")
        return self.state

    def run(self) -> AuthResponseDTO:
        while self.state not in (LoginState.SIGNED_IN, LoginState.FAILED):
            self.step()
        if self.state == LoginState.FAILED or self.result is None:
            logger.warning("%s login failed: %s", self.identity.provider, self.error)
            raise FederationFailed(self.error or "Login failed")
        return self.result


class FederationService:
    def __init__(self, wechat: WeChatClient, store: AuthService):
        self.wechat = wechat
        self.store = store

    def wechat_login(self, code: Optional[str]) -> AuthResponseDTO:
        if not code:
            raise ValueError("Missing code")
        session = self.wechat.code_to_session(code)
        openid = session["openid"]
        identity = replace(
            derive_identity(openid, self.wechat.settings.app_secret, provider="wechat"),
            display_name="WeChat User",
            metadata={"wechat_openid": openid, "avatar_url": ""},
        )
        result = FederatedLogin(self.store, identity).run()
        result.openid = openid
        return result

    def debug_login(self, phone: Optional[str]) -> AuthResponseDTO:
        if not phone:
            raise ValueError("Missing required field: phone")
        return FederatedLogin(self.store, derive_test_identity(phone.strip())).run()
