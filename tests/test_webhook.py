"""
KKiaPay webhook: signature check, ledger convergence with the purchase call,
and the failed/refund transitions.
"""
import hashlib
import hmac
import json

from sqlalchemy import select

from conftest import auth_headers, make_ad, make_boost, make_offer, make_user
from kivendi.core.config import settings
from kivendi.db.models import Ad, AdBoost, Transaction
from kivendi.services.boost_orchestrator import verify_webhook_signature

WEBHOOK_URL = "/api/v1/webhooks/kkiapay"


def boost_state(db):
    db.expire_all()
    boosts = db.execute(select(AdBoost).order_by(AdBoost.id)).scalars().all()
    txs = db.execute(select(Transaction).order_by(Transaction.id)).scalars().all()
    return (
        [(b.transaction_id, b.is_active, b.payment_status, b.end_date - b.start_date) for b in boosts],
        [(t.transaction_id, t.status, t.boost_id is not None, t.ad_id, t.user_id) for t in txs],
    )


class TestConvergence:
    """Purchase and webhook land on the same rows whatever the order."""

    def test_webhook_first_then_purchase(self, client, gateway, db):
        seller = make_user(db)
        ad = make_ad(db, seller)
        offer = make_offer(db, price="500")
        gateway.succeed("T2", amount=500)

        resp = client.post(WEBHOOK_URL, json={"transactionId": "T2", "type": "PAYMENT_SUCCEEDED"})
        assert resp.status_code == 200
        assert resp.json()["action"] == "recorded"

        row = db.execute(select(Transaction)).scalar_one()
        assert row.transaction_id == "T2"
        assert row.boost_id is None

        resp = client.post(
            f"/api/v1/ads/{ad.id}/boost",
            json={"offer_id": offer.id, "transaction_id": "T2"},
            headers=auth_headers(seller.id),
        )
        assert resp.status_code == 201, resp.text

        boosts, txs = boost_state(db)
        assert len(boosts) == 1 and boosts[0][1] is True
        assert txs == [("T2", "SUCCESS", True, ad.id, seller.id)]
        assert db.get(Ad, ad.id).is_boosted is True

    def test_order_does_not_change_final_state(self, client, gateway, db):
        seller = make_user(db)
        ad_a = make_ad(db, seller, title="A")
        ad_b = make_ad(db, seller, title="B")
        offer = make_offer(db, price="500")
        gateway.succeed("TA", amount=500)
        gateway.succeed("TB", amount=500)
        headers = auth_headers(seller.id)

        # purchase then webhook
        client.post(f"/api/v1/ads/{ad_a.id}/boost", json={"offer_id": offer.id, "transaction_id": "TA"}, headers=headers)
        resp = client.post(WEBHOOK_URL, json={"transactionId": "TA"})
        assert resp.json()["action"] == "unchanged"
        # webhook then purchase
        client.post(WEBHOOK_URL, json={"transactionId": "TB"})
        client.post(f"/api/v1/ads/{ad_b.id}/boost", json={"offer_id": offer.id, "transaction_id": "TB"}, headers=headers)

        boosts, txs = boost_state(db)
        assert boosts[0][1:] == boosts[1][1:]
        assert txs[0][1:3] == txs[1][1:3]
        assert db.get(Ad, ad_a.id).is_boosted and db.get(Ad, ad_b.id).is_boosted

    def test_replayed_webhook_is_idempotent(self, client, gateway, db):
        gateway.succeed("T3", amount=500)
        for _ in range(3):
            assert client.post(WEBHOOK_URL, json={"transaction_id": "T3"}).status_code == 200
        assert len(db.execute(select(Transaction)).scalars().all()) == 1


class TestTransitions:
    def test_pending_boost_is_promoted(self, client, gateway, db):
        seller = make_user(db)
        ad = make_ad(db, seller)
        offer = make_offer(db)
        boost = make_boost(db, ad, offer, "TP", is_active=False, payment_status="pending")
        gateway.succeed("TP", amount=5000)

        resp = client.post(WEBHOOK_URL, json={"transactionId": "TP", "type": "PAYMENT_SUCCEEDED"})
        assert resp.json()["action"] == "promoted"

        db.expire_all()
        boost = db.get(AdBoost, boost.id)
        assert boost.payment_status == "completed"
        assert boost.is_active is True
        assert db.get(Ad, ad.id).is_boosted is True

    def test_pending_boost_not_activated_when_another_is_running(self, client, gateway, db):
        seller = make_user(db)
        ad = make_ad(db, seller)
        offer = make_offer(db)
        make_boost(db, ad, offer, "RUNNING")
        pending = make_boost(db, ad, offer, "TP", is_active=False, payment_status="pending")
        gateway.succeed("TP", amount=5000)

        client.post(WEBHOOK_URL, json={"transactionId": "TP"})

        db.expire_all()
        pending = db.get(AdBoost, pending.id)
        assert pending.payment_status == "completed"
        assert pending.is_active is False

    def test_failed_payment_closes_boost(self, client, gateway, db):
        seller = make_user(db)
        ad = make_ad(db, seller)
        offer = make_offer(db)
        boost = make_boost(db, ad, offer, "TF")
        ad.is_boosted = True
        db.commit()
        gateway.succeed("TF", amount=5000, status="FAILED")

        resp = client.post(WEBHOOK_URL, json={"transactionId": "TF", "type": "PAYMENT_FAILED"})
        assert resp.json()["action"] == "failed"

        db.expire_all()
        assert db.get(AdBoost, boost.id).is_active is False
        assert db.get(AdBoost, boost.id).payment_status == "failed"
        assert db.get(Ad, ad.id).is_boosted is False

    def test_failed_event_ignored_when_provider_says_success(self, client, gateway, db):
        seller = make_user(db)
        ad = make_ad(db, seller)
        offer = make_offer(db)
        boost = make_boost(db, ad, offer, "TS")
        gateway.succeed("TS", amount=5000)

        resp = client.post(WEBHOOK_URL, json={"transactionId": "TS", "type": "PAYMENT_FAILED"})
        assert resp.json()["action"] == "recorded"
        db.expire_all()
        assert db.get(AdBoost, boost.id).is_active is True

    def test_refund_event_closes_boost(self, client, gateway, db):
        seller = make_user(db)
        ad = make_ad(db, seller)
        offer = make_offer(db)
        boost = make_boost(db, ad, offer, "TR")
        gateway.succeed("TR", amount=5000, status="REFUNDED")

        resp = client.post(WEBHOOK_URL, json={"transactionId": "TR", "type": "REFUND"})
        assert resp.json()["action"] == "refunded"
        db.expire_all()
        assert db.get(AdBoost, boost.id).payment_status == "refunded"


class TestRequestHandling:
    def test_missing_transaction_id(self, client):
        resp = client.post(WEBHOOK_URL, json={"type": "PAYMENT_SUCCEEDED"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation"

    def test_invalid_json(self, client):
        resp = client.post(WEBHOOK_URL, content=b"not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_verification_failure_is_502(self, client, gateway, db):
        gateway.fail("TX")
        resp = client.post(WEBHOOK_URL, json={"transactionId": "TX"})
        assert resp.status_code == 502
        assert db.execute(select(Transaction)).first() is None


class TestSignature:
    SECRET = "whsec_test"

    def sign(self, body: bytes) -> str:
        return hmac.new(self.SECRET.encode(), body, hashlib.sha256).hexdigest()

    def test_verify_webhook_signature(self):
        body = b'{"transactionId":"T"}'
        assert verify_webhook_signature(self.SECRET, body, self.sign(body))
        assert not verify_webhook_signature(self.SECRET, body, "deadbeef")
        assert not verify_webhook_signature(self.SECRET, body, None)

    def test_signed_request_accepted(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "kkiapay_secret", self.SECRET)
        gateway.succeed("T", amount=500)
        body = json.dumps({"transactionId": "T"}).encode()

        resp = client.post(
            WEBHOOK_URL,
            content=body,
            headers={"Content-Type": "application/json", "X-KKiaPay-Signature": self.sign(body)},
        )
        assert resp.status_code == 200

    def test_bad_signature_rejected(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "kkiapay_secret", self.SECRET)
        gateway.succeed("T", amount=500)

        resp = client.post(WEBHOOK_URL, json={"transactionId": "T"}, headers={"X-KKiaPay-Signature": "00"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "invalid_signature"
        assert gateway.verify_calls == []

    def test_unsigned_rejected_in_production(self, client, gateway, monkeypatch):
        monkeypatch.setattr(settings, "kkiapay_secret", "")
        monkeypatch.setattr(settings, "environment", "production")
        resp = client.post(WEBHOOK_URL, json={"transactionId": "T"})
        assert resp.status_code == 401
