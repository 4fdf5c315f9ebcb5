from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional

from ..config import AliyunSmsSettings, OssStsSettings
from .errors import UpstreamRejected, require_config
from .http import ProviderHTTP
from .signing import common_params, signed_query


logger = logging.getLogger(__name__)


class AliyunRPCClient:
    """Signed GET calls against one Aliyun RPC endpoint (SignatureVersion 1.0)."""

    def __init__(
        self,
        http: ProviderHTTP,
        endpoint: str,
        access_key_id: Optional[str],
        access_key_secret: Optional[str],
        hash_algorithm: str = "HMAC-SHA1",
    ):
        self.http = http
        self.endpoint = endpoint
        self.access_key_id = access_key_id
        self.access_key_secret = access_key_secret
        self.hash_algorithm = hash_algorithm

    def build_url(self, action: str, version: str, params: Dict[str, Optional[str]]) -> str:
        require_config(AccessKeyId=self.access_key_id, AccessKeySecret=self.access_key_secret)
        # fresh nonce and timestamp on every build; never reuse a signed URL
        full: Dict[str, Optional[str]] = dict(
            common_params(self.access_key_id or "", action, version, self.hash_algorithm)
        )
        full.update(params)
        query = signed_query(full, "GET", self.access_key_secret, self.hash_algorithm)
        return f"https://{self.endpoint}/?{query}"

    def call(self, action: str, version: str, params: Dict[str, Optional[str]]) -> tuple[int, Dict[str, Any]]:
        url = self.build_url(action, version, params)
        logger.info("aliyun %s -> %s", action, self.endpoint)
        return self.http.get_json(url)


def normalize_phone(phone: str) -> str:
    phone = phone.strip()
    return phone[3:] if phone.startswith("+86") else phone


class SmsClient:
    def __init__(self, http: ProviderHTTP, settings: AliyunSmsSettings):
        self.settings = settings
        self.rpc = AliyunRPCClient(
            http,
            endpoint=settings.endpoint,
            access_key_id=settings.access_key_id,
            access_key_secret=settings.access_key_secret,
        )

    def send_code(self, phone: str, code: str) -> Optional[str]:
        """Send a verification code; returns the upstream RequestId."""
        _, data = self.rpc.call(
            "SendSms",
            "2017-05-25",
            {
                "RegionId": self.settings.region_id,
                "PhoneNumbers": normalize_phone(phone),
                "SignName": self.settings.sign_name,
                "TemplateCode": self.settings.template_code,
                "TemplateParam": json.dumps({"code": code}, separators=(",", ":")),
            },
        )
        request_id = data.get("RequestId")
        if data.get("Code") == "OK":
            return request_id
        logger.warning("SendSms rejected: code=%s request_id=%s", data.get("Code"), request_id)
        raise UpstreamRejected(
            f"发送失败: {data.get('Message')} ({data.get('Code')})",
            http_status=500,
            extra={"requestId": request_id},
        )


class StsClient:
    def __init__(self, http: ProviderHTTP, settings: OssStsSettings):
        self.settings = settings
        self.rpc = AliyunRPCClient(
            http,
            endpoint=f"sts.{settings.region}.aliyuncs.com",
            access_key_id=settings.access_key_id,
            access_key_secret=settings.access_key_secret,
        )

    def assume_role(self, session_name: str, duration_seconds: Optional[int] = None) -> Dict[str, Any]:
        """Return the ``Credentials`` object of an AssumeRole response."""
        require_config(OSS_ROLE_ARN=self.settings.role_arn)
        status, data = self.rpc.call(
            "AssumeRole",
            "2015-04-01",
            {
                "RoleArn": self.settings.role_arn,
                "RoleSessionName": session_name,
                "DurationSeconds": str(duration_seconds or self.settings.duration_seconds),
            },
        )
        credentials = data.get("Credentials")
        if status >= 400 or not isinstance(credentials, dict):
            logger.warning("AssumeRole rejected: status=%s code=%s", status, data.get("Code"))
            raise UpstreamRejected("Failed to get STS token", http_status=500, extra={"details": data})
        return credentials
