import json
import unittest

import httpx

from rocket_server.app.config import AliyunSmsSettings, OssStsSettings
from rocket_server.app.provider.aliyun import SmsClient, StsClient, normalize_phone
from rocket_server.app.provider.errors import ConfigMissing, UpstreamRejected, UpstreamUnreachable
from rocket_server.app.provider.signing import sign
from rocket_server.tests.support import Upstream


SMS_HOST = "dysmsapi.aliyuncs.com"
STS_HOST = "sts.cn-beijing.aliyuncs.com"


def sms_settings(**kw):
    base = dict(access_key_id="AK", access_key_secret="s3cr3t", sign_name="Test", template_code="SMS_1")
    base.update(kw)
    return AliyunSmsSettings(**base)


def oss_settings(**kw):
    base = dict(access_key_id="OAK", access_key_secret="oss-secret", role_arn="acs:ram::1:role/upload")
    base.update(kw)
    return OssStsSettings(**base)


class TestSmsClient(unittest.TestCase):
    def test_send_code_signs_request(self):
        up = Upstream().json(SMS_HOST, {"Code": "OK", "RequestId": "RID-1", "Message": "OK"})
        cli = SmsClient(up.http(), sms_settings())
        rid = cli.send_code("+8613800138000", "123456")
        self.assertEqual(rid, "RID-1")
        [req] = up.calls_to(SMS_HOST)
        self.assertEqual(req.method, "GET")
        params = dict(req.url.params)
        self.assertEqual(params["Action"], "SendSms")
        self.assertEqual(params["PhoneNumbers"], "13800138000")
        self.assertEqual(json.loads(params["TemplateParam"]), {"code": "123456"})
        self.assertEqual(params["Version"], "2017-05-25")
        signature = params.pop("Signature")
        self.assertEqual(signature, sign(params, "GET", "s3cr3t"))

    def test_query_keys_sorted_before_signature(self):
        up = Upstream().json(SMS_HOST, {"Code": "OK", "RequestId": "R"})
        SmsClient(up.http(), sms_settings()).send_code("13800138000", "1")
        keys = [k for k, _ in up.requests[0].url.params.multi_items()]
        self.assertEqual(keys[-1], "Signature")
        self.assertEqual(keys[:-1], sorted(keys[:-1]))

    def test_each_attempt_gets_fresh_nonce(self):
        up = Upstream().json(SMS_HOST, {"Code": "OK", "RequestId": "R"})
        cli = SmsClient(up.http(), sms_settings())
        cli.send_code("13800138000", "1")
        cli.send_code("13800138000", "1")
        nonces = {r.url.params["SignatureNonce"] for r in up.requests}
        self.assertEqual(len(nonces), 2)

    def test_rejected_code_raises_with_request_id(self):
        up = Upstream().json(SMS_HOST, {"Code": "isv.BUSINESS_LIMIT_CONTROL", "Message": "limit", "RequestId": "R9"})
        cli = SmsClient(up.http(), sms_settings())
        with self.assertRaises(UpstreamRejected) as ctx:
            cli.send_code("13800138000", "1")
        self.assertEqual(ctx.exception.http_status, 500)
        self.assertEqual(ctx.exception.extra["requestId"], "R9")
        self.assertIn("isv.BUSINESS_LIMIT_CONTROL", ctx.exception.msg)

    def test_missing_secret_fails_before_network(self):
        up = Upstream().json(SMS_HOST, {"Code": "OK"})
        cli = SmsClient(up.http(), sms_settings(access_key_secret=None))
        with self.assertRaises(ConfigMissing):
            cli.send_code("13800138000", "1")
        self.assertEqual(up.requests, [])

    def test_transport_error_surfaces(self):
        def boom(req):
            raise httpx.ConnectError("refused", request=req)

        up = Upstream().on(SMS_HOST, boom)
        cli = SmsClient(up.http(), sms_settings())
        with self.assertRaises(UpstreamUnreachable):
            cli.send_code("13800138000", "1")
        self.assertEqual(len(up.requests), 1)

    def test_normalize_phone(self):
        self.assertEqual(normalize_phone("+8613800138000"), "13800138000")
        self.assertEqual(normalize_phone("13800138000"), "13800138000")


class TestStsClient(unittest.TestCase):
    def test_assume_role_returns_credentials(self):
        creds = {"AccessKeyId": "STS.x", "AccessKeySecret": "y", "SecurityToken": "z", "Expiration": "2030-01-01T00:00:00Z"}
        up = Upstream().json(STS_HOST, {"RequestId": "R", "Credentials": creds})
        cli = StsClient(up.http(), oss_settings())
        self.assertEqual(cli.assume_role("flutter-abc"), creds)
        params = dict(up.requests[0].url.params)
        self.assertEqual(params["Action"], "AssumeRole")
        self.assertEqual(params["RoleSessionName"], "flutter-abc")
        self.assertEqual(params["DurationSeconds"], "3600")
        signature = params.pop("Signature")
        self.assertEqual(signature, sign(params, "GET", "oss-secret"))

    def test_error_response_rejected(self):
        up = Upstream().json(STS_HOST, {"Code": "NoPermission", "Message": "denied"}, status_code=403)
        cli = StsClient(up.http(), oss_settings())
        with self.assertRaises(UpstreamRejected) as ctx:
            cli.assume_role("flutter-abc")
        self.assertEqual(ctx.exception.http_status, 500)
        self.assertEqual(ctx.exception.extra["details"]["Code"], "NoPermission")

    def test_missing_role_arn(self):
        up = Upstream()
        cli = StsClient(up.http(), oss_settings(role_arn=None))
        with self.assertRaises(ConfigMissing):
            cli.assume_role("flutter-abc")
        self.assertEqual(up.requests, [])
