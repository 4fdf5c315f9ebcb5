from __future__ import annotations
import logging
import secrets
from typing import Dict, Optional

from ..models.dto import SmsResultDTO
from ..provider.aliyun import SmsClient


logger = logging.getLogger(__name__)


def generate_code() -> str:
    """Six-digit numeric verification code."""
    return str(100000 + secrets.randbelow(900000))


class SmsService:
    def __init__(self, sms: SmsClient):
        self.sms = sms

    def send_verification_code(self, phone: Optional[str], template_param: Optional[Dict[str, str]] = None) -> SmsResultDTO:
        if not phone:
            raise ValueError("手机号不能为空")
        code = (template_param or {}).get("code") or generate_code()
        request_id = self.sms.send_code(phone, code)
        logger.info("verification code sent to ***%s request_id=%s", phone[-4:], request_id)
        return SmsResultDTO(requestId=request_id, code=code)
