from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import AppleSettings
from .http import ProviderHTTP


logger = logging.getLogger(__name__)

STATUS_OK = 0
# "This receipt is from the test environment, but it was sent to the
# production environment for verification."
STATUS_SANDBOX_RECEIPT = 21007


@dataclass
class ReceiptVerification:
    status: Optional[int]
    payload: Dict[str, Any]
    environment: str

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


class AppleReceiptClient:
    """verifyReceipt client with the production-then-sandbox protocol."""

    def __init__(self, http: ProviderHTTP, settings: AppleSettings):
        self.http = http
        self.settings = settings
        if not settings.shared_secret:
            logger.warning("APP_STORE_SHARED_SECRET is not set; auto-renewable receipts will not verify")

    def _body(self, receipt_data: str, exclude_old_transactions: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"receipt-data": receipt_data}
        if self.settings.shared_secret:
            body["password"] = self.settings.shared_secret
        if exclude_old_transactions:
            body["exclude-old-transactions"] = True
        return body

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        _, data = self.http.post_json(url, body)
        return data

    def verify(self, receipt_data: str, exclude_old_transactions: bool = False) -> ReceiptVerification:
        body = self._body(receipt_data, exclude_old_transactions)
        data = self._post(self.settings.production_url, body)
        environment = "production"
        if _status(data) == STATUS_SANDBOX_RECEIPT:
            logger.info("production verification returned 21007, retrying with sandbox")
            data = self._post(self.settings.sandbox_url, body)
            environment = "sandbox"
        return ReceiptVerification(status=_status(data), payload=data, environment=environment)


def _status(data: Dict[str, Any]) -> Optional[int]:
    try:
        return int(data.get("status"))
    except (TypeError, ValueError):
        return None
