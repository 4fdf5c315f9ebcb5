import hashlib
import unittest
from datetime import datetime

from rocket_server.app.models.orm import UserPurchase
from rocket_server.app.provider.apple import ReceiptVerification
from rocket_server.app.provider.errors import Conflict, UpstreamRejected
from rocket_server.app.services.receipt_service import (
    ReceiptService,
    ReconcileOutcome,
    extract_transaction,
    latest_transaction,
    receipt_hash,
)
from rocket_server.tests.support import memory_session_factory


RECEIPT = "MIIT..."

OK_PAYLOAD = {
    "status": 0,
    "receipt": {
        "in_app": [
            {"transaction_id": "1000", "product_id": "pro.once", "purchase_date_ms": "1700000000000"},
        ]
    },
}


class StubApple:
    def __init__(self, status=0, payload=None, on_verify=None):
        self.status = status
        self.payload = payload if payload is not None else dict(OK_PAYLOAD)
        self.calls = 0
        self.on_verify = on_verify

    def verify(self, receipt_data, exclude_old_transactions=False):
        self.calls += 1
        if self.on_verify:
            self.on_verify()
        return ReceiptVerification(status=self.status, payload=self.payload, environment="production")


class TestReceiptHash(unittest.TestCase):
    def test_matches_reference_sha256(self):
        self.assertEqual(receipt_hash(RECEIPT), hashlib.sha256(b"MIIT...").hexdigest())
        self.assertEqual(len(receipt_hash(RECEIPT)), 64)


class TestTransactionExtraction(unittest.TestCase):
    def test_latest_receipt_info_preferred(self):
        payload = {
            "receipt": {"product_id": "ignored"},
            "latest_receipt_info": [
                {"transaction_id": "1", "product_id": "sub", "purchase_date_ms": "1000"},
                {"transaction_id": "2", "product_id": "sub", "purchase_date_ms": "3000", "expires_date_ms": "9000"},
                {"transaction_id": "3", "product_id": "sub", "purchase_date_ms": "2000"},
            ],
        }
        self.assertEqual(latest_transaction(payload)["transaction_id"], "2")
        info = extract_transaction(payload)
        self.assertEqual(info.transaction_id, "2")
        self.assertEqual(info.purchased_at, datetime(1970, 1, 1, 0, 0, 3))
        self.assertEqual(info.expires_at, datetime(1970, 1, 1, 0, 0, 9))

    def test_receipt_record_fallback(self):
        payload = {"receipt": {"original_transaction_id": "77", "product_id": "one"}}
        info = extract_transaction(payload, declared_product_id="declared")
        self.assertEqual(info.transaction_id, "77")
        self.assertEqual(info.product_id, "one")
        self.assertIsNone(info.expires_at)

    def test_declared_product_and_now(self):
        before = datetime.utcnow()
        info = extract_transaction({"receipt": {}}, declared_product_id="declared")
        self.assertEqual(info.product_id, "declared")
        self.assertGreaterEqual(info.purchased_at, before)
        self.assertIsNone(info.transaction_id)
        self.assertEqual(extract_transaction({}).product_id, "unknown")


class TestReconcile(unittest.TestCase):
    def setUp(self):
        self.sf = memory_session_factory()
        self.apple = StubApple()
        self.svc = ReceiptService(self.sf, self.apple)

    def _rows(self):
        db = self.sf()
        try:
            return db.query(UserPurchase).all()
        finally:
            db.close()

    def _reconcile(self, user_id="u1", **kw):
        args = dict(receipt=RECEIPT, user_id=user_id, app_slug="rocket", device_id="dev-1", platform="ios", declared_product_id="pro.once")
        args.update(kw)
        return self.svc.reconcile(**args)

    def test_creates_record(self):
        res = self._reconcile()
        self.assertEqual(res.outcome, ReconcileOutcome.CREATED)
        [row] = self._rows()
        self.assertEqual(row.user_id, "u1")
        self.assertEqual(row.receipt_hash, receipt_hash(RECEIPT))
        self.assertEqual(row.transaction_id, "1000")
        self.assertEqual(row.product_id, "pro.once")
        self.assertEqual(row.source_device_id, "dev-1")
        self.assertEqual(row.app_slug, "rocket")
        self.assertTrue(row.is_valid)
        self.assertEqual(row.receipt_excerpt, RECEIPT + "...")

    def test_same_user_replay_is_idempotent(self):
        first = self._reconcile()
        second = self._reconcile()
        self.assertTrue(first.created)
        self.assertEqual(second.outcome, ReconcileOutcome.ALREADY_MIGRATED)
        self.assertEqual(first.purchase_id, second.purchase_id)
        self.assertEqual(len(self._rows()), 1)
        self.assertEqual(self.apple.calls, 1)

    def test_other_user_conflict_keeps_original(self):
        self._reconcile(user_id="u1")
        with self.assertRaises(Conflict):
            self._reconcile(user_id="u2")
        [row] = self._rows()
        self.assertEqual(row.user_id, "u1")
        self.assertEqual(self.apple.calls, 1)

    def test_failed_verification_writes_nothing(self):
        self.apple.status = 21002
        with self.assertRaises(UpstreamRejected) as ctx:
            self._reconcile()
        self.assertEqual(ctx.exception.msg, "Apple verification failed status: 21002")
        self.assertEqual(self._rows(), [])

    def test_missing_fields(self):
        with self.assertRaises(ValueError):
            self._reconcile(device_id=None)
        self.assertEqual(self.apple.calls, 0)

    def _insert_winner(self, user_id):
        def insert():
            db = self.sf()
            try:
                db.add(UserPurchase(
                    user_id=user_id,
                    receipt_hash=receipt_hash(RECEIPT),
                    purchased_at=datetime.utcnow(),
                ))
                db.commit()
            finally:
                db.close()
        return insert

    def test_insert_race_same_user_is_success(self):
        self.apple.on_verify = self._insert_winner("u1")
        res = self._reconcile(user_id="u1")
        self.assertEqual(res.outcome, ReconcileOutcome.ALREADY_MIGRATED)
        self.assertEqual(len(self._rows()), 1)

    def test_insert_race_other_user_is_conflict(self):
        self.apple.on_verify = self._insert_winner("u9")
        with self.assertRaises(Conflict):
            self._reconcile(user_id="u1")
        [row] = self._rows()
        self.assertEqual(row.user_id, "u9")
