from __future__ import annotations
from typing import Optional

from ..config import OssStsSettings
from ..models.dto import OssStsDTO
from ..provider.aliyun import StsClient


ALLOWED_OPERATIONS = ["PutObject", "GetObject", "ListObjects"]


class StorageService:
    """Temporary OSS credentials for direct client uploads."""

    def __init__(self, sts: StsClient, settings: OssStsSettings):
        self.sts = sts
        self.settings = settings

    def issue_upload_credentials(self, user_id: str, app_slug: Optional[str] = None, env: Optional[str] = None) -> OssStsDTO:
        env = env or "test"
        app_slug = app_slug or "default"
        creds = self.sts.assume_role(session_name=f"flutter-{user_id[:8]}")
        return OssStsDTO(
            accessKeyId=creds.get("AccessKeyId", ""),
            accessKeySecret=creds.get("AccessKeySecret", ""),
            securityToken=creds.get("SecurityToken", ""),
            expiration=creds.get("Expiration", ""),
            bucket=self.settings.bucket,
            endpoint=self.settings.endpoint,
            region=self.settings.region,
            # 按环境与用户隔离的路径前缀
            pathPrefix=f"{env}/users/{user_id}/{app_slug}/",
            allowedOperations=list(ALLOWED_OPERATIONS),
        )
