from __future__ import annotations
import base64
import hashlib
import hmac
import uuid
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional
from urllib.parse import quote

from .errors import ConfigMissing


HASH_ALGORITHMS = {
    "HMAC-SHA1": hashlib.sha1,
    "HMAC-SHA256": hashlib.sha256,
}

# quote() already escapes !'()* when safe=""; only "~" needs forcing
_FORCED = {"~": "%7E"}


def percent_encode(value: str) -> str:
    """RFC 3986 encoding as required by Aliyun RPC APIs (UTF-8, space as %20)."""
    encoded = quote(str(value), safe="")
    for raw, repl in _FORCED.items():
        encoded = encoded.replace(raw, repl)
    return encoded


def _clean(params: Mapping[str, Optional[str]]) -> Dict[str, str]:
    return {k: str(v) for k, v in params.items() if v is not None and v != ""}


def canonical_query(params: Mapping[str, Optional[str]]) -> str:
    items = sorted(_clean(params).items(), key=lambda kv: kv[0])
    return "&".join(f"{percent_encode(k)}={percent_encode(v)}" for k, v in items)


def string_to_sign(method: str, params: Mapping[str, Optional[str]], path: str = "/") -> str:
    return "&".join([method.upper(), percent_encode(path), percent_encode(canonical_query(params))])


def sign(
    params: Mapping[str, Optional[str]],
    method: str,
    secret: Optional[str],
    hash_algorithm: str = "HMAC-SHA1",
    path: str = "/",
) -> str:
    """Return the base64 ``Signature`` for ``params``.

    The HMAC key is ``secret + "&"``; the trailing ampersand is part of the
    protocol even though no token secret follows it.
    """
    if not secret:
        raise ConfigMissing("access key secret not set")
    try:
        digestmod = HASH_ALGORITHMS[hash_algorithm.upper()]
    except KeyError:
        raise ValueError(f"unsupported signature method: {hash_algorithm}")
    key = f"{secret}&".encode("utf-8")
    msg = string_to_sign(method, params, path).encode("utf-8")
    digest = hmac.new(key, msg, digestmod).digest()
    return base64.b64encode(digest).decode("ascii")


def utc_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def common_params(
    access_key_id: str,
    action: str,
    version: str,
    hash_algorithm: str = "HMAC-SHA1",
    nonce: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> Dict[str, str]:
    """Protocol parameters shared by every RPC call.

    A fresh nonce and timestamp are generated unless given; callers must not
    reuse them between attempts.
    """
    return {
        "AccessKeyId": access_key_id,
        "Action": action,
        "Format": "JSON",
        "SignatureMethod": hash_algorithm,
        "SignatureNonce": nonce or str(uuid.uuid4()),
        "SignatureVersion": "1.0",
        "Timestamp": timestamp or utc_timestamp(),
        "Version": version,
    }


def signed_query(
    params: Mapping[str, Optional[str]],
    method: str,
    secret: Optional[str],
    hash_algorithm: str = "HMAC-SHA1",
) -> str:
    """Canonical query with the ``Signature`` parameter appended."""
    signature = sign(params, method, secret, hash_algorithm)
    return f"{canonical_query(params)}&Signature={percent_encode(signature)}"
