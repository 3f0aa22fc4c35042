import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings
from coupon_packages import list_coupon_packages
from database import db, ensure_indexes, get_db
from directory import Identity, UserDirectory
from errors import ForbiddenError, NotFoundError, ServiceError, UnauthenticatedError
from lifecycle import CouponLifecycle, coupon_view
from notifications import NotificationDispatcher
from schemas import BeneficiaryContact, CouponType, CouponValue, VendorType
from wallet_service import WalletService

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; running without a database")
    yield


app = FastAPI(title="Coupons & Wallets API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def envelope(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"status": "success"}
    if message:
        body["message"] = message
    body.update(extra)
    if data is not None:
        body["data"] = data
    return body


def error_response(status_code: int, message: str, data: Any = None, **extra) -> JSONResponse:
    body: Dict[str, Any] = {"status": "error", "message": message, **extra}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    return JSONResponse(status_code=status_code, content=body)


# ---------------------- Error handling ----------------------
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message, exc.data)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{key: val for key, val in err.items() if key != "ctx"} for err in exc.errors()]
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    return error_response(400, message, errors)


@app.exception_handler(PydanticValidationError)
async def model_validation_handler(request: Request, exc: PydanticValidationError):
    return error_response(400, "Invalid data", exc.errors(include_url=False, include_context=False))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# ---------------------- Dependencies ----------------------
dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return dispatcher


def get_lifecycle(database=Depends(get_db), notifier: NotificationDispatcher = Depends(get_dispatcher)) -> CouponLifecycle:
    return CouponLifecycle(database, dispatcher=notifier)


def get_wallet_service(database=Depends(get_db)) -> WalletService:
    return WalletService(database)


def optional_identity(x_user_id: Optional[str] = Header(None), database=Depends(get_db)) -> Optional[Identity]:
    if not x_user_id:
        return None
    return UserDirectory(database).get(x_user_id)


def current_identity(identity: Optional[Identity] = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise UnauthenticatedError()
    return identity


def require_roles(*roles: str):
    def checker(identity: Identity = Depends(current_identity)) -> Identity:
        if identity.role not in roles:
            raise ForbiddenError(f"User role {identity.role} is not authorized to access this route")
        return identity

    return checker


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@app.get("/")
def read_root():
    return {"message": "Coupons Backend Running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }

    if db is None:
        response["database"] = "⚠️  DATABASE_URL / DATABASE_NAME not set"
        return response

    response["database_name"] = db.name
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# ---------------------- Coupon API ----------------------
coupon_router = APIRouter(prefix="/api/coupons", tags=["coupons"])


class PaymentReferencesIn(ApiModel):
    transaction_id: Optional[str] = None
    gateway: Optional[str] = None
    gateway_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    gateway_details: Optional[Dict[str, Any]] = None


class PurchaseRequest(ApiModel):
    package_id: str = Field(..., min_length=1)
    quantity: Optional[int] = 1
    partner_id: Optional[str] = None
    beneficiary_name: Optional[str] = None
    beneficiary_phone: Optional[str] = None
    beneficiary_email: Optional[str] = None
    assign_beneficiary: bool = False
    payment_references: PaymentReferencesIn = Field(default_factory=PaymentReferencesIn)


class ValidityIn(ApiModel):
    start_date: Optional[datetime] = None
    end_date: datetime
    is_active: Optional[bool] = None


class ValidityPatch(ApiModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class UsageIn(ApiModel):
    max_uses: Optional[int] = Field(None, ge=1)
    is_unlimited: Optional[bool] = None


class CreateCouponRequest(ApiModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: str = Field(..., min_length=1)
    type: CouponType = "discount"
    value: CouponValue
    partner: Optional[str] = None
    donor: Optional[str] = None
    beneficiary: Optional[BeneficiaryContact] = None
    validity: ValidityIn
    usage: UsageIn = Field(default_factory=UsageIn)
    terms: List[str] = Field(default_factory=list)
    is_public: bool = True
    status: Literal["active", "inactive"] = "active"


class UpdateCouponRequest(ApiModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1)
    type: Optional[CouponType] = None
    value: Optional[CouponValue] = None
    partner: Optional[str] = None
    beneficiary: Optional[BeneficiaryContact] = None
    validity: Optional[ValidityPatch] = None
    usage: Optional[UsageIn] = None
    terms: Optional[List[str]] = None
    is_public: Optional[bool] = None
    status: Optional[Literal["active", "inactive", "expired"]] = None


class AssignRequest(ApiModel):
    beneficiary_name: Optional[str] = None
    beneficiary_phone: Optional[str] = None
    beneficiary_email: Optional[str] = None
    partner_id: Optional[str] = None


class RedeemRequest(ApiModel):
    partner_id: Optional[str] = None
    location: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    purchase_amount: Optional[float] = Field(None, ge=0)


class SettleCouponRequest(ApiModel):
    amount: Optional[float] = Field(None, ge=0)
    reference_no: Optional[str] = None
    notes: Optional[str] = None


class RejectRequest(ApiModel):
    reason: Optional[str] = None
    mark_as: Literal["REJECTED", "CANCELLED"] = "REJECTED"


class ValidateRequest(ApiModel):
    code: str = ""


class Recipient(ApiModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class SendRequest(ApiModel):
    recipient: Recipient = Field(default_factory=Recipient)
    methods: Dict[str, bool] = Field(default_factory=dict)
    partner_id: Optional[str] = None


class AddToWalletRequest(ApiModel):
    vendor_id: str = Field(..., min_length=1)


@coupon_router.get("/packages")
def get_coupon_packages():
    packages = list_coupon_packages()
    return envelope(packages, results=len(packages))


@coupon_router.post("/purchase", status_code=201)
def purchase_coupons(
    payload: PurchaseRequest,
    identity: Optional[Identity] = Depends(optional_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    pkg, created = lifecycle.purchase(
        identity,
        payload.package_id,
        quantity=payload.quantity,
        partner_id=payload.partner_id,
        beneficiary_name=payload.beneficiary_name,
        beneficiary_phone=payload.beneficiary_phone,
        beneficiary_email=payload.beneficiary_email,
        assign_beneficiary=payload.assign_beneficiary,
        payment_references=payload.payment_references.model_dump(exclude_none=True),
    )
    return envelope(
        {"package": pkg.summary(), "coupons": [coupon_view(c) for c in created]},
        f"{len(created)} coupon(s) created successfully",
    )


@coupon_router.get("/my-coupons")
def get_my_coupons(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    identity: Identity = Depends(current_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    items, pagination = lifecycle.my_coupons(identity, page=page, limit=limit, status=status)
    return envelope([c.to_api() for c in items], results=len(items), pagination=pagination)


@coupon_router.get("/code/{code}")
def get_coupon_by_code(
    code: str,
    identity: Optional[Identity] = Depends(optional_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    coupon = lifecycle.get_by_code(identity, code)
    data = coupon_view(coupon)
    data["isRedeemable"] = True
    return envelope(data, "Coupon is valid")


@coupon_router.post("/validate")
def validate_coupon(payload: ValidateRequest, lifecycle: CouponLifecycle = Depends(get_lifecycle)):
    try:
        valid, coupon = lifecycle.validate(payload.code)
    except NotFoundError as exc:
        return error_response(404, exc.message, valid=False)

    data = None
    if valid:
        data = {
            "code": coupon.code,
            "title": coupon.title,
            "category": coupon.category,
            "value": coupon.value.to_api(),
            "validUntil": coupon.validity.end_date.isoformat(),
            "remainingUses": coupon_view(coupon)["remainingUses"],
        }
    return {
        "status": "success",
        "valid": valid,
        "data": data,
        "message": "Coupon is valid" if valid else "Coupon is invalid or expired",
    }


@coupon_router.get("")
def get_coupons(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[str] = "active",
    sort_by: Optional[str] = Query("-createdAt", alias="sortBy"),
    identity: Optional[Identity] = Depends(optional_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    items, pagination = lifecycle.list(
        identity, page=page, limit=limit, category=category, type=type, status=status, sort_by=sort_by
    )
    return envelope([coupon_view(c) for c in items], results=len(items), pagination=pagination)


@coupon_router.post("", status_code=201)
def create_coupon(
    payload: CreateCouponRequest,
    identity: Identity = Depends(current_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    coupon = lifecycle.create(
        identity,
        title=payload.title,
        description=payload.description,
        category=payload.category,
        type=payload.type,
        value=payload.value.model_dump(),
        partner=payload.partner,
        donor=payload.donor,
        beneficiary=payload.beneficiary.model_dump() if payload.beneficiary else None,
        validity=payload.validity.model_dump(),
        usage=payload.usage.model_dump(exclude_none=True),
        terms=payload.terms,
        is_public=payload.is_public,
        status=payload.status,
    )
    return envelope(coupon.to_api(), "Coupon created successfully")


@coupon_router.get("/{coupon_id}")
def get_coupon(
    coupon_id: str,
    identity: Optional[Identity] = Depends(optional_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    return envelope(coupon_view(lifecycle.get(identity, coupon_id)))


@coupon_router.put("/{coupon_id}")
def update_coupon(
    coupon_id: str,
    payload: UpdateCouponRequest,
    identity: Identity = Depends(current_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    coupon = lifecycle.update(identity, coupon_id, payload.model_dump(exclude_unset=True))
    return envelope(coupon.to_api(), "Coupon updated successfully")


@coupon_router.delete("/{coupon_id}")
def delete_coupon(
    coupon_id: str,
    identity: Identity = Depends(current_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    lifecycle.delete(identity, coupon_id)
    return envelope(message="Coupon deleted successfully")


@coupon_router.post("/{coupon_id}/redeem")
def redeem_coupon(
    coupon_id: str,
    payload: RedeemRequest,
    identity: Identity = Depends(current_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.redeem(
        identity,
        coupon_id,
        partner_id=payload.partner_id,
        location=payload.location,
        notes=payload.notes,
        purchase_amount=payload.purchase_amount,
    )
    coupon = result.coupon
    return envelope(
        {
            "couponCode": coupon.code,
            "redemptionAmount": result.amount,
            "stage": coupon.stage,
            "remainingUses": coupon_view(coupon)["remainingUses"],
            "walletUpdated": result.wallet_updated,
        },
        "Coupon redeemed successfully",
    )


@coupon_router.post("/{coupon_id}/assign")
def assign_coupon(
    coupon_id: str,
    payload: AssignRequest,
    identity: Identity = Depends(current_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    coupon = lifecycle.assign(
        identity,
        coupon_id,
        beneficiary_name=payload.beneficiary_name,
        beneficiary_phone=payload.beneficiary_phone,
        beneficiary_email=payload.beneficiary_email,
        partner_id=payload.partner_id,
    )
    return envelope(coupon.to_api(), "Coupon assigned to beneficiary")


@coupon_router.get("/{coupon_id}/analytics")
def get_coupon_analytics(
    coupon_id: str,
    identity: Identity = Depends(current_identity),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    return envelope(lifecycle.analytics(identity, coupon_id))


@coupon_router.post("/{coupon_id}/send")
def send_coupon(
    coupon_id: str,
    payload: SendRequest,
    identity: Identity = Depends(require_roles("admin")),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    results = lifecycle.send(
        identity,
        coupon_id,
        recipient=payload.recipient.model_dump(exclude_none=True),
        methods=payload.methods,
        partner_id=payload.partner_id,
    )
    return envelope(results, "Coupon sent successfully")


@coupon_router.post("/{coupon_id}/add-to-wallet")
def add_coupon_to_wallet(
    coupon_id: str,
    payload: AddToWalletRequest,
    identity: Identity = Depends(require_roles("admin")),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    wallet = lifecycle.add_to_wallet(identity, coupon_id, payload.vendor_id)
    return envelope(wallet.to_api(), "Coupon added to vendor wallet")


@coupon_router.post("/{coupon_id}/settle")
def settle_coupon(
    coupon_id: str,
    payload: SettleCouponRequest,
    identity: Identity = Depends(require_roles("admin", "staff")),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    coupon = lifecycle.settle(
        identity, coupon_id, amount=payload.amount, reference_no=payload.reference_no, notes=payload.notes
    )
    return envelope(coupon.to_api(), "Coupon settled successfully")


@coupon_router.post("/{coupon_id}/reject")
def reject_coupon(
    coupon_id: str,
    payload: RejectRequest,
    identity: Identity = Depends(require_roles("admin", "partner", "staff")),
    lifecycle: CouponLifecycle = Depends(get_lifecycle),
):
    coupon = lifecycle.reject(identity, coupon_id, reason=payload.reason, mark_as=payload.mark_as)
    return envelope(coupon.to_api(), "Coupon rejected")


# ---------------------- Wallet API ----------------------
wallet_router = APIRouter(prefix="/api/wallets", tags=["wallets"])


class CreateWalletRequest(ApiModel):
    vendor: Optional[str] = None
    vendor_type: Optional[VendorType] = None
    partner_id: Optional[str] = None


class TopupRequest(ApiModel):
    amount: float = Field(..., gt=0)
    description: Optional[str] = None


class SettleWalletRequest(ApiModel):
    amount: float = Field(..., gt=0)
    transaction_id: Optional[str] = None


@wallet_router.post("", status_code=201)
def create_wallet(
    payload: CreateWalletRequest,
    identity: Identity = Depends(require_roles("admin")),
    service: WalletService = Depends(get_wallet_service),
):
    wallet = service.create(identity, vendor=payload.vendor, vendor_type=payload.vendor_type, partner_id=payload.partner_id)
    return envelope(wallet.to_api(), "Wallet created successfully")


@wallet_router.get("")
def get_all_wallets(
    vendor_type: Optional[str] = Query(None, alias="vendorType"),
    status: Optional[str] = None,
    identity: Identity = Depends(require_roles("admin")),
    service: WalletService = Depends(get_wallet_service),
):
    items = service.list(vendor_type=vendor_type, status=status)
    return envelope([w.to_api() for w in items], count=len(items))


@wallet_router.get("/{vendor_id}")
def get_wallet(
    vendor_id: str,
    identity: Identity = Depends(current_identity),
    service: WalletService = Depends(get_wallet_service),
):
    return envelope(service.get(identity, vendor_id).to_api())


@wallet_router.get("/{vendor_id}/transactions")
def get_wallet_transactions(
    vendor_id: str,
    identity: Identity = Depends(current_identity),
    service: WalletService = Depends(get_wallet_service),
):
    transactions = service.transactions(identity, vendor_id)
    return envelope([tx.to_api() for tx in transactions], count=len(transactions))


@wallet_router.post("/{vendor_id}/topup")
def topup_wallet(
    vendor_id: str,
    payload: TopupRequest,
    identity: Identity = Depends(require_roles("admin")),
    service: WalletService = Depends(get_wallet_service),
):
    wallet = service.topup(identity, vendor_id, payload.amount, payload.description)
    return envelope(wallet.to_api(), "Wallet topped up successfully")


@wallet_router.post("/{vendor_id}/settle")
def settle_wallet(
    vendor_id: str,
    payload: SettleWalletRequest,
    identity: Identity = Depends(require_roles("admin")),
    service: WalletService = Depends(get_wallet_service),
):
    wallet = service.settle(identity, vendor_id, payload.amount, payload.transaction_id)
    return envelope(wallet.to_api(), "Payment settled successfully")


app.include_router(coupon_router)
app.include_router(wallet_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
