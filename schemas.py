"""
Database Schemas

MongoDB collection schemas for the coupon and wallet backend, as Pydantic models.
Each top-level model maps to one collection (model name lowercased):
- Coupon -> "coupon" collection
- Wallet -> "wallet" collection

Documents are stored with snake_case keys and exposed over the API in camelCase.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

import config


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_mongo(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"})

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Stage:
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    REDEEMED_PENDING_SETTLEMENT = "REDEEMED_PENDING_SETTLEMENT"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


CouponStage = Literal["CREATED", "ASSIGNED", "REDEEMED_PENDING_SETTLEMENT", "SETTLED", "REJECTED", "CANCELLED"]
CouponStatus = Literal["active", "inactive", "expired", "cancelled"]
CouponType = Literal["discount", "free_item", "service", "voucher"]


# ---------------------- Coupon value ----------------------
def _currency_code(value: str) -> str:
    value = (value or "").strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValueError("Currency must be a 3-letter code")
    return value


class FixedValue(Document):
    kind: Literal["fixed"] = "fixed"
    amount: float = Field(..., ge=0, description="Face value in currency units")
    currency: Annotated[str, AfterValidator(_currency_code)] = Field(default_factory=lambda: config.settings.default_currency)


class PercentageValue(Document):
    kind: Literal["percentage"] = "percentage"
    percentage: float = Field(..., gt=0, le=100, description="Share of the purchase amount covered")


class FreeItemValue(Document):
    kind: Literal["free_item"] = "free_item"
    description: str = Field(..., min_length=1, description="Item or service granted")


CouponValue = Annotated[Union[FixedValue, PercentageValue, FreeItemValue], Field(discriminator="kind")]


# ---------------------- Coupon sub-documents ----------------------
class Validity(Document):
    start_date: UtcDatetime
    end_date: UtcDatetime
    is_active: bool = True


class Usage(Document):
    max_uses: int = Field(1, ge=1)
    used_count: int = Field(0, ge=0)
    is_unlimited: bool = False


class FraudPrevention(Document):
    is_verified: bool = True
    verification_method: str = "manual"
    max_redemptions_per_day: int = Field(1, ge=1)


class StageEntry(Document):
    stage: CouponStage
    changed_at: UtcDatetime = Field(default_factory=utcnow)
    changed_by: Optional[str] = None
    notes: str = ""


class Redemption(Document):
    redeemed_by: Optional[str] = None
    redeemed_at: UtcDatetime = Field(default_factory=utcnow)
    amount: float = Field(0, ge=0)
    purchase_amount: Optional[float] = None
    partner: Optional[str] = None
    location: Dict[str, Any] = Field(default_factory=dict)
    notes: str = ""


class Settlement(Document):
    payable_amount: float = Field(..., ge=0)
    approved_by: Optional[str] = None
    reference_no: str = ""
    paid_on: UtcDatetime = Field(default_factory=utcnow)


class BeneficiaryContact(Document):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.name or self.phone or self.email)


class QrCode(Document):
    url: str
    data: str


class PaymentReferences(Document):
    transaction_id: Optional[str] = None
    gateway: str = "coupon"
    gateway_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    gateway_details: Optional[Dict[str, Any]] = None


class DeliveryMethod(Document):
    email: bool = True
    sms: bool = True
    whatsapp: bool = True


class CouponAnalytics(Document):
    views: int = 0
    shares: int = 0
    downloads: int = 0


class Coupon(Document):
    """
    Coupons collection schema
    Collection name: "coupon"
    """
    id: Optional[str] = None
    code: str = Field(..., description="Unique coupon code, uppercase")
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: str = Field(..., description="Coupon category, e.g. food or medical")
    type: CouponType = "discount"
    value: CouponValue
    issuer: str = Field(..., description="User that created the coupon")
    donor: Optional[str] = None
    partner: Optional[str] = Field(None, description="Partner where the coupon is redeemable")
    beneficiary: Optional[BeneficiaryContact] = None
    validity: Validity
    usage: Usage = Field(default_factory=Usage)
    fraud_prevention: FraudPrevention = Field(default_factory=FraudPrevention)
    stage: CouponStage = Stage.CREATED
    stage_history: List[StageEntry] = Field(default_factory=list)
    status: CouponStatus = "active"
    redemptions: List[Redemption] = Field(default_factory=list)
    settlement: Optional[Settlement] = None
    is_public: bool = True
    qr_code: Optional[QrCode] = None
    package_id: Optional[str] = None
    package_title: Optional[str] = None
    package_amount: Optional[float] = None
    package_category: Optional[str] = None
    package_validity_days: Optional[int] = None
    payment_references: Optional[PaymentReferences] = None
    assigned_at: Optional[UtcDatetime] = None
    assigned_by: Optional[str] = None
    settled_at: Optional[UtcDatetime] = None
    rejection_reason: Optional[str] = None
    delivery_method: DeliveryMethod = Field(default_factory=DeliveryMethod)
    analytics: CouponAnalytics = Field(default_factory=CouponAnalytics)
    terms: List[str] = Field(default_factory=list)
    version: int = 0
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()


# ---------------------- Wallet ----------------------
TransactionType = Literal["topup", "coupon_received", "coupon_redeemed", "settlement", "adjustment"]
VendorType = Literal[
    "food_server",
    "restaurant",
    "food_grain_supplier",
    "pathology_lab",
    "hospital",
    "milk_bread_vendor",
    "other",
]


class WalletTransaction(Document):
    type: TransactionType
    amount: float = Field(..., ge=0)
    coupon: Optional[str] = None
    description: str = ""
    transaction_id: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: UtcDatetime = Field(default_factory=utcnow)
    status: Literal["pending", "completed", "failed", "cancelled"] = "completed"
    # coupon_redeemed entries for coupons that were never credited at intake
    balance_neutral: bool = False


class WalletCouponEntry(Document):
    coupon: str
    received_at: UtcDatetime = Field(default_factory=utcnow)
    redeemed_at: Optional[UtcDatetime] = None
    redeemed_amount: float = 0
    status: Literal["pending", "redeemed", "expired", "cancelled"] = "pending"


class LastSettlement(Document):
    date: UtcDatetime
    amount: float
    transaction_id: Optional[str] = None


class WalletSettings(Document):
    auto_settlement: bool = False
    settlement_threshold: float = 10000
    notification_enabled: bool = True


class Wallet(Document):
    """
    Vendor wallets collection schema
    Collection name: "wallet"
    """
    id: Optional[str] = None
    vendor: str = Field(..., description="Vendor user id, one wallet per vendor")
    vendor_type: VendorType = "other"
    current_balance: float = 0
    total_received: float = 0
    total_redeemed: float = 0
    total_settled: float = 0
    transactions: List[WalletTransaction] = Field(default_factory=list)
    coupons: List[WalletCouponEntry] = Field(default_factory=list)
    status: Literal["active", "suspended", "closed"] = "active"
    last_settlement: Optional[LastSettlement] = None
    settings: WalletSettings = Field(default_factory=WalletSettings)
    version: int = 0
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
