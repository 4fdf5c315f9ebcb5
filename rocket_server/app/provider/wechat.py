from __future__ import annotations
import logging
from typing import Dict

from ..config import WeChatSettings
from .errors import UpstreamRejected, require_config
from .http import ProviderHTTP


logger = logging.getLogger(__name__)


class WeChatClient:
    def __init__(self, http: ProviderHTTP, settings: WeChatSettings):
        self.http = http
        self.settings = settings

    def code_to_session(self, code: str) -> Dict[str, str]:
        """Exchange a mini-program login code for ``{openid, session_key}``."""
        require_config(WECHAT_APP_ID=self.settings.app_id, WECHAT_APP_SECRET=self.settings.app_secret)
        _, data = self.http.get_json(
            self.settings.session_url,
            params={
                "appid": self.settings.app_id or "",
                "secret": self.settings.app_secret or "",
                "js_code": code,
                "grant_type": "authorization_code",
            },
        )
        if data.get("errcode"):
            logger.info("jscode2session rejected: errcode=%s", data.get("errcode"))
            raise UpstreamRejected(f"WeChat API Error: {data.get('errmsg')}")
        openid = data.get("openid")
        if not openid:
            raise UpstreamRejected("WeChat API Error: missing openid")
        return {"openid": openid, "session_key": data.get("session_key") or ""}
