"""
Coupon and payment workflow
===========================

1. validate_coupon      - asks the gateway, never raises to the caller
2. create_charge_intent - revalidates any coupon server side, then creates an intent
3. record_payment       - appends to the payments ledger after the client confirms
4. subscription flip    - separate update on the user (see users.UserDirectory)

Steps 3 and 4 are not atomic. `reconciliation` lists payments whose user was
never flipped to subscribed so the gap stays visible.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import stripe
import structlog
from pymongo import DESCENDING
from pymongo.database import Database

from config import Settings
from database import create_document, now_utc, oid, serialize_doc, store_guard
from errors import InvalidCoupon, NotFound, UpstreamFailure, ValidationError
from schemas import Coupon, Payment

logger = structlog.get_logger(component="payments")


class StripeGateway:
    """Thin adapter over the Stripe SDK"""

    def __init__(self, api_key: str, currency: str = "usd", timeout: float = 10.0, client=None):
        self.currency = currency
        self._client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=1,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        if not settings.STRIPE_SECRET_KEY:
            raise RuntimeError("STRIPE_SECRET_KEY must be set")
        return cls(
            settings.STRIPE_SECRET_KEY,
            currency=settings.PAYMENT_CURRENCY,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    def retrieve_coupon(self, code: str) -> Optional[Dict[str, Any]]:
        """Returns {"valid", "percent_off"} or None when the gateway has no such coupon"""
        try:
            coupon = self._client.coupons.retrieve(code)
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                return None
            raise UpstreamFailure("Payment gateway rejected the coupon lookup") from e
        except stripe.StripeError as e:
            logger.error("upstream_failure", operation="retrieve_coupon", error=str(e))
            raise UpstreamFailure("Payment gateway unavailable") from e
        return {"valid": bool(getattr(coupon, "valid", False)), "percent_off": getattr(coupon, "percent_off", None)}

    def create_charge_intent(self, amount_cents: int, metadata: Dict[str, str]) -> Dict[str, Any]:
        try:
            intent = self._client.payment_intents.create(
                params={
                    "amount": amount_cents,
                    "currency": self.currency,
                    "payment_method_types": ["card"],
                    "metadata": metadata,
                }
            )
        except stripe.StripeError as e:
            logger.error("upstream_failure", operation="create_charge_intent", error=str(e))
            raise UpstreamFailure("Payment gateway unavailable") from e
        return {"id": intent.id, "client_secret": intent.client_secret}


class CouponBook:
    def __init__(self, db: Database):
        self.db = db
        self.coupons = db["coupons"]

    def all(self) -> List[Dict[str, Any]]:
        with store_guard("list_coupons"):
            return [serialize_doc(c) for c in self.coupons.find({}).sort("createdAt", DESCENDING)]

    def get(self, coupon_id: str) -> Dict[str, Any]:
        with store_guard("get_coupon"):
            coupon = self.coupons.find_one({"_id": oid(coupon_id)})
        if not coupon:
            raise NotFound("Coupon not found")
        return serialize_doc(coupon)

    def add(self, code: str, discount: float, description: Optional[str] = None,
            expiry_date: Optional[datetime] = None) -> str:
        coupon = Coupon(
            code=code,
            discount=discount,
            description=description,
            expiryDate=expiry_date,
            createdAt=now_utc(),
        )
        coupon_id = create_document(self.db, "coupons", coupon)
        logger.info("coupon_added", coupon_id=coupon_id, code=code)
        return coupon_id

    def delete(self, coupon_id: str) -> None:
        with store_guard("delete_coupon"):
            result = self.coupons.delete_one({"_id": oid(coupon_id)})
        if result.deleted_count == 0:
            raise NotFound("Coupon not found")
        logger.info("coupon_deleted", coupon_id=coupon_id)


class PaymentWorkflow:
    def __init__(self, db: Database, gateway):
        self.db = db
        self.payments = db["payments"]
        self.users = db["users"]
        self.gateway = gateway

    def validate_coupon(self, code: Optional[str]) -> Dict[str, Any]:
        if not code:
            return {"valid": False}
        try:
            coupon = self.gateway.retrieve_coupon(code)
        except UpstreamFailure as e:
            logger.warning("coupon_validation_failed", code=code, error=str(e))
            return {"valid": False}
        if not coupon or not coupon.get("valid"):
            return {"valid": False}
        return {"valid": True, "discountPercent": coupon.get("percent_off") or 0}

    def create_charge_intent(self, amount: float, payer: str, coupon: Optional[str] = None) -> Dict[str, Any]:
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be positive")
        discount = 0.0
        if coupon:
            # gateway errors propagate as UpstreamFailure; only a definite answer is InvalidCoupon
            found = self.gateway.retrieve_coupon(coupon)
            if not found or not found.get("valid"):
                logger.info("coupon_rejected", code=coupon, payer=payer)
                raise InvalidCoupon("Coupon is not valid")
            discount = float(found.get("percent_off") or 0)

        charged = round(amount * (1 - discount / 100.0), 2)
        amount_cents = int(round(charged * 100))
        if amount_cents <= 0:
            raise ValidationError("Discounted amount must be positive")

        metadata = {"email": payer}
        if coupon:
            metadata["coupon"] = coupon
        intent = self.gateway.create_charge_intent(amount_cents, metadata)
        logger.info("charge_intent_created", payer=payer, amount=charged, coupon=coupon)
        return {
            "clientSecret": intent["client_secret"],
            "amount": charged,
            "discountPercent": discount,
        }

    def record_payment(self, user_email: str, amount: float, transaction_id: str, date: datetime,
                       coupon: Optional[str] = None, discount_percent: Optional[float] = None) -> str:
        payment = Payment(
            userEmail=user_email.lower(),
            amount=amount,
            transactionId=transaction_id,
            coupon=coupon,
            discountPercent=discount_percent,
            date=date,
        )
        payment_id = create_document(self.db, "payments", payment)
        # trusted as reported by the client; not checked against the gateway
        logger.info(
            "payment_recorded",
            payment_id=payment_id,
            email=user_email,
            transaction_id=transaction_id,
            gateway_verified=False,
        )
        return payment_id

    def has_paid(self, email: str) -> bool:
        with store_guard("payment_lookup"):
            return self.payments.count_documents({"userEmail": email.lower()}, limit=1) > 0

    def history(self, email: str) -> List[Dict[str, Any]]:
        with store_guard("payment_history"):
            cursor = self.payments.find({"userEmail": email.lower()}).sort("date", DESCENDING)
            return [serialize_doc(p) for p in cursor]

    def reconciliation(self) -> List[Dict[str, Any]]:
        """Payments whose user is missing or was never flipped to subscribed"""
        with store_guard("reconciliation"):
            emails = self.payments.distinct("userEmail")
            subscribed = set(
                u["email"]
                for u in self.users.find({"email": {"$in": emails}, "isSubscribed": True}, {"email": 1})
            )
            orphaned = [e for e in emails if e not in subscribed]
            cursor = self.payments.find({"userEmail": {"$in": orphaned}}).sort("date", DESCENDING)
            return [serialize_doc(p) for p in cursor]
