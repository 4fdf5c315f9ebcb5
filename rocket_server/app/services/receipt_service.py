from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
import enum
import hashlib
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..models.orm import UserPurchase
from ..provider.apple import AppleReceiptClient, ReceiptVerification
from ..provider.errors import Conflict, UpstreamRejected


logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "Receipt already bound to another account"


def receipt_hash(receipt: str) -> str:
    """Idempotency key of a receipt blob: lowercase hex SHA-256 of its UTF-8 bytes."""
    return hashlib.sha256(receipt.encode("utf-8")).hexdigest()


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


def _purchase_ms(entry: Dict[str, Any]) -> int:
    try:
        return int(entry.get("purchase_date_ms") or 0)
    except (TypeError, ValueError):
        return 0


def latest_transaction(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Most recent transaction entry of a verifyReceipt response.

    ``latest_receipt_info`` covers auto-renewable subscriptions; otherwise the
    newest ``receipt.in_app`` entry, otherwise the receipt record itself.
    """
    latest = payload.get("latest_receipt_info")
    if isinstance(latest, list) and latest:
        return max(latest, key=_purchase_ms)
    receipt = payload.get("receipt") or {}
    in_app = receipt.get("in_app") if isinstance(receipt, dict) else None
    if isinstance(in_app, list) and in_app:
        return max(in_app, key=_purchase_ms)
    return receipt if isinstance(receipt, dict) else {}


@dataclass
class TransactionInfo:
    transaction_id: Optional[str]
    product_id: str
    purchased_at: datetime
    expires_at: Optional[datetime]


def extract_transaction(payload: Dict[str, Any], declared_product_id: Optional[str] = None) -> TransactionInfo:
    entry = latest_transaction(payload)
    tid = entry.get("transaction_id") or entry.get("original_transaction_id")
    return TransactionInfo(
        transaction_id=str(tid) if tid else None,
        product_id=entry.get("product_id") or declared_product_id or "unknown",
        purchased_at=_ms_to_datetime(entry.get("purchase_date_ms")) or datetime.utcnow(),
        expires_at=_ms_to_datetime(entry.get("expires_date_ms")),
    )


class ReconcileOutcome(str, enum.Enum):
    CREATED = "created"
    ALREADY_MIGRATED = "already_migrated"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    purchase_id: str
    receipt_hash: str

    @property
    def created(self) -> bool:
        return self.outcome == ReconcileOutcome.CREATED


class ReceiptService:
    def __init__(self, session_factory: sessionmaker, apple: AppleReceiptClient):
        self.session_factory = session_factory
        self.apple = apple

    def verify(self, receipt_data: Optional[str], exclude_old_transactions: bool = False) -> ReceiptVerification:
        if not receipt_data:
            raise ValueError("Missing receiptData")
        return self.apple.verify(receipt_data, exclude_old_transactions)

    def _existing(self, digest: str, user_id: str) -> Optional[ReconcileResult]:
        db = self.session_factory()
        try:
            row = db.query(UserPurchase).filter(UserPurchase.receipt_hash == digest).one_or_none()
        finally:
            db.close()
        if row is None:
            return None
        if row.user_id != user_id:
            logger.warning("receipt %s already bound to user %s, rejected for %s", digest[:12], row.user_id, user_id)
            raise Conflict(CONFLICT_MESSAGE, extra={"success": False})
        return ReconcileResult(ReconcileOutcome.ALREADY_MIGRATED, row.id, digest)

    def reconcile(
        self,
        receipt: Optional[str],
        user_id: Optional[str],
        app_slug: Optional[str],
        device_id: Optional[str],
        platform: str = "ios",
        declared_product_id: Optional[str] = None,
    ) -> ReconcileResult:
        """Verify a receipt and record it once per receipt hash."""
        if not device_id or not user_id or not receipt:
            raise ValueError("Missing required fields: device_id, user_id, receipt")
        digest = receipt_hash(receipt)

        existing = self._existing(digest, user_id)
        if existing:
            return existing

        verification = self.apple.verify(receipt)
        if not verification.ok:
            raise UpstreamRejected(
                f"Apple verification failed status: {verification.status}",
                extra={"success": False},
            )
        info = extract_transaction(verification.payload, declared_product_id)

        db = self.session_factory()
        try:
            row = UserPurchase(
                user_id=user_id,
                app_slug=app_slug or "unknown",
                product_id=info.product_id,
                platform=platform or "ios",
                transaction_id=info.transaction_id,
                receipt_hash=digest,
                receipt_excerpt=receipt[:100] + "...",
                source_device_id=device_id,
                is_valid=True,
                purchased_at=info.purchased_at,
                expires_at=info.expires_at,
            )
            db.add(row)
            db.commit()
            logger.info(
                "recorded purchase %s (%s, %s) for user %s",
                row.id, info.product_id, verification.environment, user_id,
            )
            return ReconcileResult(ReconcileOutcome.CREATED, row.id, digest)
        except IntegrityError:
            db.rollback()
        finally:
            db.close()

        # Lost the insert race to an identical submission: re-read the winner.
        existing = self._existing(digest, user_id)
        if existing is None:
            raise RuntimeError("purchase insert conflicted but no record found")
        return existing
