"""
Boost purchase and KKiaPay webhook handling.

Both paths verify the transaction with KKiaPay, upsert the ledger row in its
own short transaction, then touch boosts. Mutual exclusion comes from the
database only: the unique transaction_id on ad_boosts, the unique provider id
on the ledger, and the conditional insert guarded by the one-active-boost index.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, aliased

from kivendi.core.errors import (
    Conflict,
    Forbidden,
    Internal,
    NotFound,
    PaymentNotCompleted,
    PaymentVerificationFailed,
    ValidationFailed,
)
from kivendi.db.base import utcnow
from kivendi.db.models import (
    AD_SOLD,
    AD_VALIDATED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    Ad,
    AdBoost,
    BoostOffer,
)
from kivendi.db.session import SessionLocal
from kivendi.services import boost_store, ledger
from kivendi.services.notifications import add_notification, notify, publish
from kivendi.services.payment_gateway import GatewayError, KKiaPayClient, VerifiedTransaction

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")

WEBHOOK_SUCCEEDED = "PAYMENT_SUCCEEDED"
WEBHOOK_FAILED = "PAYMENT_FAILED"
WEBHOOK_REFUND = "REFUND"

# serialization_failure, deadlock_detected, unique_violation
RACE_PGCODES = {"40001", "40P01", "23505"}


@dataclass
class PurchaseResult:
    boost_id: int
    ad_id: int
    offer_id: int
    transaction_id: str
    start_date: datetime
    end_date: datetime
    amount_paid: Decimal


@dataclass
class _PurchaseContext:
    ad_id: int
    ad_title: str
    offer_id: int
    offer_name: str
    duration_days: int
    price: Decimal


def is_race_error(e: DBAPIError) -> bool:
    """Constraint or serialization failures from a concurrent purchase; anything else is an outage."""
    if isinstance(e, IntegrityError):
        return True
    return getattr(e.orig, "pgcode", None) in RACE_PGCODES


def verify_webhook_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """X-KKiaPay-Signature is hex(HMAC-SHA256(secret, raw body))."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class BoostOrchestrator:
    def __init__(self, gateway: KKiaPayClient, *, sandbox: bool = False, session_factory=SessionLocal) -> None:
        self.gateway = gateway
        self.sandbox = sandbox
        self._session_factory = session_factory

    # Purchase

    def _check_preconditions(self, user_id: int, ad_id: int, offer_id: int, transaction_id: str) -> _PurchaseContext:
        db = self._session_factory()
        try:
            ad = db.get(Ad, ad_id)
            if ad is None or ad.user_id != user_id:
                raise Forbidden("you can only boost your own ads")
            if ad.status == AD_SOLD:
                raise Conflict("ad is already sold", code=Conflict.ALREADY_SOLD)
            if ad.status != AD_VALIDATED:
                raise Conflict("ad must be validated before it can be boosted", code=Conflict.AD_NOT_VALIDATED)

            offer = boost_store.get_active_offer(db, offer_id)
            if offer is None:
                raise NotFound("boost offer not found or inactive")
            if offer.duration_days < 1:
                raise ValidationFailed("boost offer duration must be at least one day")

            if boost_store.boost_by_transaction(db, transaction_id) is not None:
                raise Conflict("transaction already used", code=Conflict.DUPLICATE_TRANSACTION)
            if boost_store.current_boost(db, ad_id) is not None:
                raise Conflict("ad already has an active boost", code=Conflict.ALREADY_BOOSTED)

            return _PurchaseContext(
                ad_id=ad.id,
                ad_title=ad.title,
                offer_id=offer.id,
                offer_name=offer.name,
                duration_days=offer.duration_days,
                price=Decimal(offer.price),
            )
        finally:
            db.close()

    async def _notify_failure(self, user_id: int, ctx: _PurchaseContext, transaction_id: str, reason: str) -> None:
        await notify(
            user_id,
            "boost_failure",
            "Échec du boost",
            f"Le boost de votre annonce \"{ctx.ad_title}\" n'a pas pu être activé: {reason}.",
            {
                "ad_id": ctx.ad_id,
                "ad_title": ctx.ad_title,
                "offer_id": ctx.offer_id,
                "transaction_id": transaction_id,
                "reason": reason,
            },
        )

    async def purchase(
        self,
        user_id: int,
        ad_id: int,
        offer_id: int,
        transaction_id: str,
        payment_method: str | None = None,
    ) -> PurchaseResult:
        transaction_id = (transaction_id or "").strip()
        if not transaction_id:
            raise ValidationFailed("transaction_id is required")
        if offer_id is None or offer_id < 1:
            raise ValidationFailed("offer_id is required")
        payment_method = (payment_method or "kkiapay").strip() or "kkiapay"

        ctx = self._check_preconditions(user_id, ad_id, offer_id, transaction_id)
        logger.info("Boost purchase: user=%s ad=%s offer=%s tx=%s", user_id, ad_id, offer_id, transaction_id)

        try:
            verified = await self.gateway.verify_transaction(transaction_id)
        except GatewayError as e:
            logger.warning("Boost purchase tx=%s: verification failed: %s", transaction_id, e)
            await self._notify_failure(user_id, ctx, transaction_id, "vérification du paiement impossible")
            raise PaymentVerificationFailed("could not verify the payment with KKiaPay") from e

        amount = verified.amount
        if self.sandbox and amount == 0:
            amount = ctx.price

        ledger.record_verification_now(
            transaction_id=transaction_id,
            ad_id=ad_id,
            user_id=user_id,
            amount=amount,
            status=verified.status,
            state=verified.state,
            raw=verified.raw,
        )

        if not verified.is_success:
            await self._notify_failure(user_id, ctx, transaction_id, f"paiement non complété ({verified.status})")
            raise PaymentNotCompleted(f"payment status is {verified.status}")

        if not self.sandbox and abs(verified.amount - ctx.price) > AMOUNT_TOLERANCE:
            logger.warning(
                "Boost purchase tx=%s: amount %s does not match offer price %s",
                transaction_id, verified.amount, ctx.price,
            )
            await self._notify_failure(user_id, ctx, transaction_id, "montant incorrect")
            raise PaymentNotCompleted("paid amount does not match the offer price", code="amount_mismatch")

        result, notification = self._apply_purchase(user_id, ctx, transaction_id, payment_method)
        if notification is not None:
            await publish(notification)
        return result

    def _apply_purchase(self, user_id: int, ctx: _PurchaseContext, transaction_id: str, payment_method: str):
        db = self._session_factory()
        try:
            db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
            now = utcnow()
            start, end = boost_store.boost_window(now, ctx.duration_days)

            boost_store.deactivate_expired_for_ad(db, ctx.ad_id, now)
            if boost_store.boost_by_transaction(db, transaction_id) is not None:
                raise Conflict("transaction already used", code=Conflict.DUPLICATE_TRANSACTION)

            boost_id = boost_store.insert_boost_if_free(
                db,
                ad_id=ctx.ad_id,
                offer_id=ctx.offer_id,
                user_id=user_id,
                start=start,
                end=end,
                amount_paid=ctx.price,
                transaction_id=transaction_id,
                payment_method=payment_method,
            )
            if boost_id is None:
                raise Conflict("ad already has an active boost", code=Conflict.ALREADY_BOOSTED)

            ledger.link_boost(db, transaction_id, boost_id)
            db.execute(
                update(Ad)
                .where(Ad.id == ctx.ad_id)
                .values(is_boosted=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            notification = add_notification(
                db,
                user_id,
                "boost_success",
                "Boost activé avec succès !",
                f"Votre annonce \"{ctx.ad_title}\" a été boostée avec l'offre {ctx.offer_name} "
                f"pour {ctx.duration_days} jours.",
                {
                    "ad_id": ctx.ad_id,
                    "ad_title": ctx.ad_title,
                    "boost_id": boost_id,
                    "boost_name": ctx.offer_name,
                    "duration_days": ctx.duration_days,
                    "amount_paid": float(ctx.price),
                    "start_date": start.date().isoformat(),
                    "end_date": end.date().isoformat(),
                    "transaction_id": transaction_id,
                },
            )
            db.commit()
        except DBAPIError as e:
            db.rollback()
            if not is_race_error(e):
                logger.exception("Boost purchase tx=%s failed in the database", transaction_id)
                raise Internal("could not record the boost") from e
            logger.info("Boost purchase tx=%s lost a race: %s", transaction_id, type(e).__name__)
            raise self._classify_race(db, ctx.ad_id, transaction_id) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "Boost %s created: ad=%s tx=%s %s -> %s", boost_id, ctx.ad_id, transaction_id, start, end
        )
        result = PurchaseResult(
            boost_id=boost_id,
            ad_id=ctx.ad_id,
            offer_id=ctx.offer_id,
            transaction_id=transaction_id,
            start_date=start,
            end_date=end,
            amount_paid=ctx.price,
        )
        return result, notification

    def _classify_race(self, db: Session, ad_id: int, transaction_id: str) -> Exception:
        if boost_store.boost_by_transaction(db, transaction_id) is not None:
            return Conflict("transaction already used", code=Conflict.DUPLICATE_TRANSACTION)
        return Conflict("ad already has an active boost", code=Conflict.ALREADY_BOOSTED)

    # Webhook

    async def handle_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Process one KKiaPay callback. Safe to replay in any order."""
        transaction_id = str(payload.get("transactionId") or payload.get("transaction_id") or "").strip()
        if not transaction_id:
            raise ValidationFailed("transactionId is required")
        event = str(payload.get("type") or WEBHOOK_SUCCEEDED).upper()
        logger.info("KKiaPay webhook: type=%s tx=%s status=%s", event, transaction_id, payload.get("status"))

        try:
            verified = await self.gateway.verify_transaction(transaction_id)
        except GatewayError as e:
            logger.warning("KKiaPay webhook tx=%s: verification failed: %s", transaction_id, e)
            raise PaymentVerificationFailed("could not verify the payment with KKiaPay") from e

        action, ad_id, notification = self._apply_webhook(event, transaction_id, verified)
        if notification is not None:
            await publish(notification)
        return {"status": "received", "transaction_id": transaction_id, "action": action, "ad_id": ad_id}

    def _apply_webhook(self, event: str, transaction_id: str, verified: VerifiedTransaction):
        db = self._session_factory()
        try:
            boost = boost_store.boost_by_transaction(db, transaction_id)
            amount = verified.amount
            if self.sandbox and amount == 0 and boost is not None:
                amount = Decimal(boost.amount_paid)
            ledger.record_verification(
                db,
                transaction_id=transaction_id,
                boost_id=boost.id if boost else None,
                ad_id=boost.ad_id if boost else None,
                user_id=boost.user_id if boost else None,
                amount=amount,
                status=verified.status,
                state=verified.state,
                raw=verified.raw,
            )
            action = "recorded"
            notification = None
            if boost is not None:
                if event == WEBHOOK_SUCCEEDED and verified.is_success:
                    action, notification = self._promote(db, boost)
                elif event == WEBHOOK_FAILED and not verified.is_success:
                    action = self._close_boost(db, boost, PAYMENT_FAILED)
                elif event == WEBHOOK_REFUND:
                    action = self._close_boost(db, boost, PAYMENT_REFUNDED)
            db.commit()
            return action, boost.ad_id if boost else None, notification
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _promote(self, db: Session, boost: AdBoost):
        if boost.payment_status != PAYMENT_PENDING:
            return "unchanged", None
        now = utcnow()
        boost.payment_status = PAYMENT_COMPLETED
        boost.updated_at = now
        db.flush()
        # Activate only if the window is still open and the ad has no other running boost.
        other = aliased(AdBoost)
        other_active = (
            select(other.id)
            .where(other.ad_id == boost.ad_id, other.is_active.is_(True), other.id != boost.id)
            .exists()
        )
        db.execute(
            update(AdBoost)
            .where(AdBoost.id == boost.id, AdBoost.end_date > now, ~other_active)
            .values(is_active=True)
            .execution_options(synchronize_session=False)
        )
        boost_store.refresh_ad_flag(db, boost.ad_id, now)
        offer = db.get(BoostOffer, boost.boost_offer_id)
        notification = add_notification(
            db,
            boost.user_id,
            "boost_success",
            "Boost activé avec succès !",
            "Votre paiement a été confirmé, votre boost est maintenant actif.",
            {
                "ad_id": boost.ad_id,
                "boost_id": boost.id,
                "boost_name": offer.name if offer else None,
                "transaction_id": boost.transaction_id,
            },
        )
        logger.info("KKiaPay webhook: boost %s promoted to completed", boost.id)
        return "promoted", notification

    def _close_boost(self, db: Session, boost: AdBoost, status: str) -> str:
        if boost.payment_status == status and not boost.is_active:
            return "unchanged"
        now = utcnow()
        boost.payment_status = status
        boost.is_active = False
        boost.updated_at = now
        db.flush()
        boost_store.refresh_ad_flag(db, boost.ad_id, now)
        logger.info("KKiaPay webhook: boost %s marked %s", boost.id, status)
        return status

    # Admin

    async def refund(self, boost_id: int) -> AdBoost:
        """Single provider refund call; on success the boost is closed as refunded."""
        db = self._session_factory()
        try:
            boost = db.get(AdBoost, boost_id)
            if boost is None:
                raise NotFound("boost not found")
            if not boost.transaction_id:
                raise ValidationFailed("boost has no payment transaction")
            if boost.payment_status == PAYMENT_REFUNDED:
                raise Conflict("boost already refunded", code="already_refunded")
            transaction_id = boost.transaction_id
        finally:
            db.close()

        try:
            await self.gateway.refund(transaction_id)
        except GatewayError as e:
            logger.warning("Refund of boost %s (tx=%s) failed: %s", boost_id, transaction_id, e)
            raise PaymentVerificationFailed("KKiaPay refund failed") from e

        db = self._session_factory()
        try:
            boost = db.get(AdBoost, boost_id)
            self._close_boost(db, boost, PAYMENT_REFUNDED)
            db.commit()
            return boost
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def deactivate_boost(db: Session, boost_id: int) -> AdBoost:
    boost = db.get(AdBoost, boost_id)
    if boost is None:
        raise NotFound("boost not found")
    now = utcnow()
    boost.is_active = False
    boost.updated_at = now
    db.flush()
    boost_store.refresh_ad_flag(db, boost.ad_id, now)
    db.commit()
    logger.info("Boost %s deactivated by admin", boost_id)
    return boost
