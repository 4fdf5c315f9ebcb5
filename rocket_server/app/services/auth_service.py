from __future__ import annotations
from datetime import datetime, timedelta
import json
import logging
import secrets
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from passlib.context import CryptContext

from ..config import AuthSettings
from ..models.orm import User, Session as UserSession
from ..models.dto import UserDTO, SessionDTO, AuthResponseDTO
from ..security.jwt import TokenCodec


logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class IdentityStoreError(Exception):
    pass


class UserNotFound(IdentityStoreError):
    pass


class InvalidCredentials(IdentityStoreError):
    pass


class AlreadyRegistered(IdentityStoreError):
    pass


class AuthService:
    """Email + password identity store backed by SQLAlchemy users and sessions.

    ``sign_in`` tells "no such user" apart from "wrong password" so the
    federation flow can decide between creating an account and giving up.
    """

    def __init__(self, session_factory: sessionmaker, settings: AuthSettings, codec: Optional[TokenCodec] = None):
        self.session_factory = session_factory
        self.settings = settings
        self.codec = codec or TokenCodec(settings.jwt_secret, settings.access_minutes)

    def _get_db(self) -> Session:
        return self.session_factory()

    def _hash_password(self, password: str) -> str:
        return pwd_context.hash(password)

    def _verify_password(self, password: str, password_hash: str | None) -> bool:
        if not password_hash:
            return False
        return pwd_context.verify(password, password_hash)

    def _issue_tokens(self, user: User, db: Session) -> AuthResponseDTO:
        access_token = self.codec.create_access_token(subject=user.id)
        # Refresh token: random string stored hashed
        refresh_token = secrets.token_urlsafe(32)
        sess = UserSession(
            user_id=user.id,
            refresh_token_hash=UserSession.hash_token(refresh_token),
            expires_at=datetime.utcnow() + timedelta(days=self.settings.refresh_days),
        )
        db.add(sess)
        db.commit()
        return AuthResponseDTO(
            user=to_user_dto(user),
            session=SessionDTO(
                accessToken=access_token,
                refreshToken=refresh_token,
                expiresIn=self.settings.access_minutes * 60,
            ),
        )

    def sign_in(self, email: str, password: str) -> AuthResponseDTO:
        # Synthetic emails embed case-sensitive subject ids; no case folding
        email = email.strip()
        db = self._get_db()
        try:
            user = db.query(User).filter(User.email == email).first()
            if not user:
                raise UserNotFound(email)
            if not self._verify_password(password, user.password_hash):
                raise InvalidCredentials(email)
            return self._issue_tokens(user, db)
        except SQLAlchemyError as e:
            db.rollback()
            raise IdentityStoreError(str(e)) from e
        finally:
            db.close()

    def create_user(
        self,
        email: str,
        password: str,
        phone: Optional[str] = None,
        display_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> User:
        email = email.strip()
        db = self._get_db()
        try:
            user = User(
                email=email,
                password_hash=self._hash_password(password),
                phone=phone,
                display_name=display_name,
                metadata_json=json.dumps(metadata, ensure_ascii=False) if metadata else None,
            )
            db.add(user)
            db.commit()
            db.refresh(user)
            logger.info("created user %s", user.id)
            return user
        except IntegrityError as e:
            db.rollback()
            raise AlreadyRegistered(email) from e
        except SQLAlchemyError as e:
            db.rollback()
            raise IdentityStoreError(str(e)) from e
        finally:
            db.close()

    def user_id_for_token(self, token: str) -> Optional[str]:
        """Subject of a valid access token whose user still exists."""
        try:
            payload = self.codec.decode_token(token)
        except ValueError:
            return None
        user_id = payload.get("sub")
        if not user_id:
            return None
        db = self._get_db()
        try:
            user = db.query(User).filter(User.id == user_id).first()
            return user.id if user else None
        finally:
            db.close()


def to_user_dto(user: User) -> UserDTO:
    return UserDTO(
        id=user.id,
        email=user.email,
        phone=user.phone,
        displayName=user.display_name,
        createdAt=user.created_at,
    )
