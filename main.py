import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field

from analytics import AnalyticsAggregator
from auth import Identity, JWTIdentityProvider, RoleResolver, get_identity, get_role_resolver, require_admin
from config import Settings, configure_logging
from database import connect, ensure_indexes, serialize_doc, store_guard
from engagement import EngagementLedger, UpvoteOutcome
from errors import Forbidden, NotFound, register_exception_handlers
from moderation import ProductCatalog
from payments import CouponBook, PaymentWorkflow, StripeGateway
from reviews import ReviewBook
from users import UserDirectory

logger = structlog.get_logger(component="server")


def create_app(settings: Optional[Settings] = None, db=None, identity_provider=None, gateway=None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if app.state.db is None:
            client, app.state.db = connect(settings)
            ensure_indexes(app.state.db)
        if app.state.gateway is None:
            app.state.gateway = StripeGateway.from_settings(settings)
        logger.info("server_starting")
        yield
        logger.info("server_shutting_down")
        if client is not None:
            client.close()

    app = FastAPI(title="Product Discovery API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.db = db
    app.state.identity_provider = identity_provider or JWTIdentityProvider.from_settings(settings)
    app.state.gateway = gateway

    register_exception_handlers(app)
    app.include_router(router)
    return app


# Component wiring
def get_catalog(request: Request) -> ProductCatalog:
    return ProductCatalog(request.app.state.db, request.app.state.settings.FEATURED_LIMIT)


def get_ledger(request: Request) -> EngagementLedger:
    return EngagementLedger(request.app.state.db)


def get_reviews(request: Request) -> ReviewBook:
    return ReviewBook(request.app.state.db)


def get_users(request: Request) -> UserDirectory:
    return UserDirectory(request.app.state.db)


def get_coupons(request: Request) -> CouponBook:
    return CouponBook(request.app.state.db)


def get_payments(request: Request) -> PaymentWorkflow:
    return PaymentWorkflow(request.app.state.db, request.app.state.gateway)


def get_analytics(request: Request) -> AnalyticsAggregator:
    return AnalyticsAggregator(request.app.state.db)


def ensure_caller(identity: Identity, email: Optional[str]) -> str:
    """Body emails must name the authenticated caller"""
    if email is not None and email.lower() != identity.email:
        raise Forbidden("Email does not match the signed-in user")
    return identity.email


# Request payloads
class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    image: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = []
    externalLink: Optional[str] = None
    ownerName: Optional[str] = None
    ownerImage: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    externalLink: Optional[str] = None


class VoterPayload(BaseModel):
    userEmail: Optional[EmailStr] = None


class StatusPayload(BaseModel):
    status: Literal["Pending", "Approved", "Rejected"]


class ReviewCreate(BaseModel):
    productId: str
    reviewerName: str = Field(..., min_length=1)
    reviewerImage: Optional[str] = None
    description: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1)
    discount: float = Field(..., gt=0, le=100)
    description: Optional[str] = None
    expiryDate: Optional[datetime] = None


class CouponCheck(BaseModel):
    coupon: Optional[str] = None


class PaymentIntentPayload(BaseModel):
    amount: float = Field(..., gt=0)
    email: Optional[EmailStr] = None
    coupon: Optional[str] = None


class SavePaymentPayload(BaseModel):
    userEmail: EmailStr
    amount: float = Field(..., ge=0)
    transactionId: str = Field(..., min_length=1)
    date: datetime
    coupon: Optional[str] = None
    discountPercent: Optional[float] = Field(None, ge=0, le=100)


class SubscribePayload(BaseModel):
    isSubscribed: bool
    role: Optional[Literal["user", "member"]] = None
    coupon: Optional[str] = None


class UserCreate(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    image: Optional[str] = None


router = APIRouter()


@router.get("/")
def root():
    return {"message": "Product Discovery Backend is running"}


@router.get("/health")
def health(request: Request):
    with store_guard("ping"):
        request.app.state.db.command("ping")
    return {"database": "ok"}


# Products
@router.get("/products")
def list_products(
    page: int = Query(0, ge=0),
    limit: int = Query(6, ge=1, le=100),
    search: Optional[str] = None,
    ownerEmail: Optional[str] = None,
    catalog: ProductCatalog = Depends(get_catalog),
):
    return catalog.list(page=page, limit=limit, search=search, owner_email=ownerEmail.lower() if ownerEmail else None)


@router.get("/products/featured")
def featured_products(catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.featured()


@router.get("/products/trending")
def trending_products(limit: int = Query(6, ge=1, le=100), catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.trending(limit)


@router.get("/products/review")
def review_queue(admin: Identity = Depends(require_admin), catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.review_queue()


@router.get("/products/{product_id}")
def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    return serialize_doc(catalog.get(product_id))


@router.post("/products", status_code=201)
def submit_product(
    payload: ProductCreate,
    identity: Identity = Depends(get_identity),
    catalog: ProductCatalog = Depends(get_catalog),
):
    product_id = catalog.submit(identity.email, payload.model_dump())
    return {"id": product_id, "status": "Pending"}


@router.patch("/products/upvote/{product_id}")
def upvote_product(
    product_id: str,
    payload: VoterPayload = VoterPayload(),
    identity: Identity = Depends(get_identity),
    ledger: EngagementLedger = Depends(get_ledger),
    catalog: ProductCatalog = Depends(get_catalog),
):
    voter = ensure_caller(identity, payload.userEmail)
    outcome = ledger.upvote(product_id, voter)
    if outcome is UpvoteOutcome.APPLIED:
        return {"upvoted": True, "modifiedCount": 1}
    if not catalog.exists(product_id):
        raise NotFound("Product not found")
    return {"upvoted": False, "modifiedCount": 0, "reason": "already_voted"}


@router.patch("/products/status/{product_id}")
def set_product_status(
    product_id: str,
    payload: StatusPayload,
    admin: Identity = Depends(require_admin),
    catalog: ProductCatalog = Depends(get_catalog),
):
    return catalog.set_status(product_id, payload.status)


@router.post("/products/report/{product_id}", status_code=201)
def report_product(
    product_id: str,
    payload: VoterPayload = VoterPayload(),
    identity: Identity = Depends(get_identity),
    ledger: EngagementLedger = Depends(get_ledger),
):
    reporter = ensure_caller(identity, payload.userEmail)
    return {"id": ledger.report(product_id, reporter)}


@router.patch("/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    identity: Identity = Depends(get_identity),
    roles: RoleResolver = Depends(get_role_resolver),
    catalog: ProductCatalog = Depends(get_catalog),
):
    fields = {k: v for k, v in payload.model_dump().items() if v is not None}
    return catalog.update(product_id, identity.email, roles.is_admin(identity), fields)


@router.delete("/products/{product_id}")
def delete_product(
    product_id: str,
    identity: Identity = Depends(get_identity),
    roles: RoleResolver = Depends(get_role_resolver),
    catalog: ProductCatalog = Depends(get_catalog),
):
    catalog.delete(product_id, identity.email, roles.is_admin(identity))
    return {"deleted": True}


# Reviews
@router.get("/reviews")
def list_reviews(admin: Identity = Depends(require_admin), reviews: ReviewBook = Depends(get_reviews)):
    return reviews.all()


@router.get("/reviews/{product_id}")
def product_reviews(product_id: str, reviews: ReviewBook = Depends(get_reviews)):
    return reviews.for_product(product_id)


@router.post("/reviews", status_code=201)
def add_review(
    payload: ReviewCreate,
    identity: Identity = Depends(get_identity),
    reviews: ReviewBook = Depends(get_reviews),
):
    review_id = reviews.add(
        payload.productId,
        payload.reviewerName,
        payload.description,
        payload.rating,
        reviewer_image=payload.reviewerImage,
    )
    return {"id": review_id}


# Reports
@router.get("/reports")
def list_reports(admin: Identity = Depends(require_admin), ledger: EngagementLedger = Depends(get_ledger)):
    return ledger.list_reports_with_product_summary()


# Coupons
@router.get("/coupons")
def list_coupons(coupons: CouponBook = Depends(get_coupons)):
    return coupons.all()


@router.get("/coupons/{coupon_id}")
def get_coupon(coupon_id: str, coupons: CouponBook = Depends(get_coupons)):
    return coupons.get(coupon_id)


@router.post("/coupons", status_code=201)
def add_coupon(
    payload: CouponCreate,
    admin: Identity = Depends(require_admin),
    coupons: CouponBook = Depends(get_coupons),
):
    coupon_id = coupons.add(payload.code, payload.discount, payload.description, payload.expiryDate)
    return {"id": coupon_id}


@router.delete("/coupons/{coupon_id}")
def delete_coupon(
    coupon_id: str,
    admin: Identity = Depends(require_admin),
    coupons: CouponBook = Depends(get_coupons),
):
    coupons.delete(coupon_id)
    return {"deleted": True}


# Payments
@router.post("/validate-coupon")
def validate_coupon(payload: CouponCheck, payments: PaymentWorkflow = Depends(get_payments)):
    return payments.validate_coupon(payload.coupon)


@router.post("/create-payment-intent")
def create_payment_intent(
    payload: PaymentIntentPayload,
    identity: Identity = Depends(get_identity),
    payments: PaymentWorkflow = Depends(get_payments),
):
    payer = ensure_caller(identity, payload.email)
    return payments.create_charge_intent(payload.amount, payer, payload.coupon)


@router.post("/save-payment", status_code=201)
def save_payment(
    payload: SavePaymentPayload,
    identity: Identity = Depends(get_identity),
    payments: PaymentWorkflow = Depends(get_payments),
):
    email = ensure_caller(identity, payload.userEmail)
    payment_id = payments.record_payment(
        email,
        payload.amount,
        payload.transactionId,
        payload.date,
        coupon=payload.coupon,
        discount_percent=payload.discountPercent,
    )
    return {"id": payment_id}


@router.get("/payment-history/{email}")
def payment_history(
    email: str,
    admin: Identity = Depends(require_admin),
    payments: PaymentWorkflow = Depends(get_payments),
):
    return payments.history(email)


@router.patch("/subscribe/{email}")
def subscribe(
    email: str,
    payload: SubscribePayload,
    identity: Identity = Depends(get_identity),
    roles: RoleResolver = Depends(get_role_resolver),
    users: UserDirectory = Depends(get_users),
    payments: PaymentWorkflow = Depends(get_payments),
):
    roles.require_self_or_admin(identity, email)
    # only an admin may subscribe an account that has no recorded payment
    if payload.isSubscribed and not roles.is_admin(identity) and not payments.has_paid(email):
        logger.info("access_denied", reason="subscription_without_payment", email=email)
        raise Forbidden("A recorded payment is required to subscribe")
    return users.set_subscription(email, payload.isSubscribed, payload.role, payload.coupon)


# Users
@router.get("/users")
def list_users(admin: Identity = Depends(require_admin), users: UserDirectory = Depends(get_users)):
    return users.all()


@router.get("/user/{email}")
def get_user(
    email: str,
    identity: Identity = Depends(get_identity),
    roles: RoleResolver = Depends(get_role_resolver),
    users: UserDirectory = Depends(get_users),
):
    roles.require_self_or_admin(identity, email)
    return users.get(email)


@router.post("/users", status_code=201)
def create_user(
    payload: UserCreate,
    identity: Identity = Depends(get_identity),
    users: UserDirectory = Depends(get_users),
):
    email = ensure_caller(identity, payload.email)
    return {"id": users.create(email, payload.name, payload.image)}


@router.get("/users/admin/{email}")
def check_admin(
    email: str,
    identity: Identity = Depends(get_identity),
    roles: RoleResolver = Depends(get_role_resolver),
):
    roles.require_self_or_admin(identity, email)
    return {"admin": roles.role_of(email.lower()) == "admin"}


@router.patch("/users/admin/{email}")
def make_admin(
    email: str,
    admin: Identity = Depends(require_admin),
    users: UserDirectory = Depends(get_users),
):
    return users.set_role(email, "admin")


@router.patch("/users/remove-admin/{email}")
def remove_admin(
    email: str,
    admin: Identity = Depends(require_admin),
    users: UserDirectory = Depends(get_users),
):
    return users.set_role(email, "user")


# Admin dashboards
@router.get("/admin/statistics")
def admin_statistics(admin: Identity = Depends(require_admin), stats: AnalyticsAggregator = Depends(get_analytics)):
    return stats.statistics()


@router.get("/admin/analytics")
def admin_analytics(
    metric: Literal["revenue", "products", "users"] = "revenue",
    range_: Literal["week", "month", "year"] = Query("week", alias="range"),
    admin: Identity = Depends(require_admin),
    stats: AnalyticsAggregator = Depends(get_analytics),
):
    return stats.analytics(metric, range_)


@router.get("/admin/reconciliation")
def admin_reconciliation(admin: Identity = Depends(require_admin), payments: PaymentWorkflow = Depends(get_payments)):
    return payments.reconciliation()


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
