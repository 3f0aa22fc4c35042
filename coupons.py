"""
Coupon domain logic

Code generation, value resolution, the redeemability predicate and the stage
graph, plus the repository that persists Coupon documents. Stage changes are
only appended to `stage_history`, never rewritten.
"""

import logging
import math
import secrets
import string
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, FrozenSet, List, Optional, Union

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, serialize_document, to_object_id
from errors import (
    ConflictError,
    IllegalStageTransitionError,
    NotFoundError,
    NotRedeemableError,
    ValidationError,
)
from schemas import (
    Coupon,
    FixedValue,
    FreeItemValue,
    PercentageValue,
    Redemption,
    Stage,
    StageEntry,
    utcnow,
)

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_PREFIX_LENGTH = 4

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    Stage.CREATED: frozenset({Stage.ASSIGNED, Stage.REDEEMED_PENDING_SETTLEMENT, Stage.REJECTED, Stage.CANCELLED}),
    Stage.ASSIGNED: frozenset({Stage.ASSIGNED, Stage.REDEEMED_PENDING_SETTLEMENT, Stage.REJECTED, Stage.CANCELLED}),
    Stage.REDEEMED_PENDING_SETTLEMENT: frozenset({Stage.SETTLED, Stage.REJECTED, Stage.CANCELLED}),
    Stage.REJECTED: frozenset({Stage.REJECTED, Stage.CANCELLED}),
    Stage.CANCELLED: frozenset({Stage.REJECTED, Stage.CANCELLED}),
    Stage.SETTLED: frozenset(),
}


# ---------------------- Codes ----------------------
def normalize_prefix(prefix: Optional[str]) -> str:
    cleaned = "".join(ch for ch in (prefix or "").upper() if ch in CODE_ALPHABET)
    return cleaned[:MAX_PREFIX_LENGTH] or "CPN"


def generate_code_candidate(prefix: Optional[str], suffix_length: Optional[int] = None) -> str:
    length = suffix_length or config.settings.code_suffix_length
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{normalize_prefix(prefix)}-{suffix}"


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


# ---------------------- Value ----------------------
def monetary_value(coupon: Coupon) -> float:
    """Value credited to a vendor wallet when the coupon is taken in.

    Percentage coupons carry nothing until redeemed against a purchase, and
    free-item coupons have no monetary value at all.
    """
    value = coupon.value
    if isinstance(value, FixedValue):
        return round(value.amount, 2)
    if isinstance(value, (PercentageValue, FreeItemValue)):
        return 0.0
    raise TypeError(f"Unsupported coupon value: {type(value).__name__}")


def redemption_amount(coupon: Coupon, purchase_amount: Optional[float] = None, policy: Optional[str] = None) -> float:
    value = coupon.value
    if not isinstance(value, PercentageValue):
        return monetary_value(coupon)

    if purchase_amount is not None and purchase_amount > 0:
        return round(purchase_amount * value.percentage / 100.0, 2)

    policy = policy or config.settings.percentage_redemption_policy
    if policy == config.PERCENTAGE_POLICY_REQUIRE_PURCHASE:
        raise ValidationError("purchaseAmount is required to redeem a percentage coupon")
    return 0.0


def describe_value(coupon: Coupon) -> str:
    value = coupon.value
    if isinstance(value, PercentageValue):
        return f"{value.percentage:g}% OFF"
    if isinstance(value, FixedValue):
        symbol = "₹" if value.currency == "INR" else f"{value.currency} "
        return f"{symbol}{value.amount:g}"
    return value.description


# ---------------------- Redeemability ----------------------
def is_redeemable(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    usage = coupon.usage
    return (
        coupon.status == "active"
        and coupon.validity.is_active
        and coupon.validity.start_date <= now <= coupon.validity.end_date
        and (usage.is_unlimited or usage.used_count < usage.max_uses)
    )


def unredeemable_reason(coupon: Coupon, now: Optional[datetime] = None) -> Optional[str]:
    """Friendly explanation of why a coupon can't be redeemed, None if it can."""
    now = now or utcnow()
    if is_redeemable(coupon, now):
        return None
    if now < coupon.validity.start_date:
        return "Coupon is not yet active"
    if now > coupon.validity.end_date:
        return "Coupon has expired"
    if coupon.status != "active":
        return f"Coupon is {coupon.status}"
    if not coupon.usage.is_unlimited and coupon.usage.used_count >= coupon.usage.max_uses:
        return "Coupon usage limit reached"
    return "Coupon is not valid"


def remaining_uses(coupon: Coupon) -> Union[int, str]:
    if coupon.usage.is_unlimited:
        return "Unlimited"
    return max(0, coupon.usage.max_uses - coupon.usage.used_count)


def days_remaining(coupon: Coupon, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    seconds = (coupon.validity.end_date - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def redemptions_on_day(coupon: Coupon, day: datetime, tz: Optional[tzinfo] = None) -> int:
    tz = tz or timezone.utc
    target = day.astimezone(tz).date()
    return sum(1 for r in coupon.redemptions if r.redeemed_at.astimezone(tz).date() == target)


def expires_at(start: datetime, validity_days: int) -> datetime:
    return start + timedelta(days=max(1, validity_days))


# ---------------------- Stages ----------------------
def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(coupon: Coupon, target: str) -> None:
    if not can_transition(coupon.stage, target):
        raise IllegalStageTransitionError(coupon.stage, target)


def record_stage_change(coupon: Coupon, stage: str, changed_by: Optional[str], notes: str = "") -> None:
    # Does not check the graph; callers go through ensure_transition first.
    coupon.stage_history.append(StageEntry(stage=stage, changed_by=changed_by, notes=notes))
    coupon.stage = stage
    logger.info("Coupon %s moved to stage %s by %s", coupon.code, stage, changed_by)


def advance_stage(coupon: Coupon, stage: str, changed_by: Optional[str], notes: str = "") -> bool:
    """Move along a legal edge; returns False when the coupon already sits at `stage`.

    Staying in REDEEMED_PENDING_SETTLEMENT on repeat redemptions of a multi-use
    coupon is not a transition and adds no history entry.
    """
    if coupon.stage == stage and stage == Stage.REDEEMED_PENDING_SETTLEMENT:
        return False
    ensure_transition(coupon, stage)
    record_stage_change(coupon, stage, changed_by, notes)
    return True


def record_usage(coupon: Coupon, redemption: Redemption) -> None:
    """Append a redemption and count one use. Stage is left untouched."""
    usage = coupon.usage
    if not usage.is_unlimited and usage.used_count >= usage.max_uses:
        raise NotRedeemableError("Coupon usage limit reached")
    coupon.redemptions.append(redemption)
    usage.used_count += 1


# ---------------------- QR payload ----------------------
def qr_payload(coupon: Coupon) -> dict:
    payload = {
        "code": coupon.code,
        "category": coupon.category,
        "amount": monetary_value(coupon) if isinstance(coupon.value, FixedValue) else describe_value(coupon),
        "validUntil": coupon.validity.end_date.isoformat(),
    }
    if coupon.package_id:
        payload["packageId"] = coupon.package_id
    return payload


# ---------------------- Repository ----------------------
class CouponRepository:
    collection_name = "coupon"

    def __init__(self, database: Database):
        self.database = database
        self.collection = database[self.collection_name]

    @staticmethod
    def _load(doc: Optional[dict]) -> Optional[Coupon]:
        if doc is None:
            return None
        return Coupon.model_validate(serialize_document(doc))

    def get(self, coupon_id: str) -> Coupon:
        coupon = self._load(self.collection.find_one({"_id": to_object_id(coupon_id, "coupon id")}))
        if coupon is None:
            raise NotFoundError("Coupon not found")
        return coupon

    def find_by_code(self, code: str) -> Optional[Coupon]:
        return self._load(self.collection.find_one({"code": normalize_code(code)}))

    def code_exists(self, code: str) -> bool:
        return self.collection.find_one({"code": code}, {"_id": 1}) is not None

    def insert(self, coupon: Coupon) -> Coupon:
        coupon.id = create_document(self.collection_name, coupon, self.database)
        return coupon

    def insert_with_unique_code(self, prefix: Optional[str], build: Callable[[str], Coupon]) -> Coupon:
        """Insert the coupon `build(code)` returns, regenerating the code until it is unique.

        The existence check only saves a round trip; the unique index on `code`
        decides, and a duplicate key on insert triggers another attempt.
        """
        attempts = config.settings.code_max_attempts
        for attempt in range(1, attempts + 1):
            code = generate_code_candidate(prefix)
            if self.code_exists(code):
                continue
            coupon = build(code)
            try:
                return self.insert(coupon)
            except DuplicateKeyError:
                logger.warning("Coupon code %s collided on insert (attempt %d/%d)", code, attempt, attempts)
        raise ConflictError("Could not generate a unique coupon code")

    def save(self, coupon: Coupon) -> Coupon:
        current_version = coupon.version
        coupon.version = current_version + 1
        coupon.updated_at = utcnow()
        result = self.collection.replace_one(
            {"_id": to_object_id(coupon.id, "coupon id"), "version": current_version},
            coupon.to_mongo(),
        )
        if result.matched_count == 0:
            coupon.version = current_version
            raise ConflictError("Coupon was modified by another request, please retry")
        return coupon

    def delete(self, coupon: Coupon) -> None:
        self.collection.delete_one({"_id": to_object_id(coupon.id, "coupon id")})

    def increment_views(self, coupon: Coupon) -> None:
        # analytics counters are not versioned
        self.collection.update_one({"_id": to_object_id(coupon.id, "coupon id")}, {"$inc": {"analytics.views": 1}})
        coupon.analytics.views += 1

    def find(self, query: dict, skip: int = 0, limit: int = 20, sort: Optional[List] = None) -> List[Coupon]:
        cursor = self.collection.find(query).sort(sort or [("created_at", DESCENDING)]).skip(skip).limit(limit)
        return [self._load(doc) for doc in cursor]

    def count(self, query: dict) -> int:
        return self.collection.count_documents(query)
