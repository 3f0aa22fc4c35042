"""
Coupon lifecycle

Orchestrates purchase, creation, assignment, redemption, settlement, rejection and
delivery of coupons, and drives the partner wallets those steps affect.

All checks run before anything is written. Once the coupon document is saved,
the follow-up wallet / partner / notification writes are best effort: their
failures are logged and the primary operation still succeeds.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic.alias_generators import to_snake
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

import config
import coupons
import qr
import wallets
from coupon_packages import CouponPackage, get_coupon_package
from directory import Identity, PartnerDirectory, PartnerRef, UserDirectory
from errors import (
    DailyLimitReachedError,
    ForbiddenError,
    InvalidPackageError,
    InvalidStateError,
    NotFoundError,
    NotRedeemableError,
    UnauthenticatedError,
    ValidationError,
)
from notifications import CHANNELS, NotificationDispatcher
from schemas import (
    BeneficiaryContact,
    Coupon,
    DeliveryMethod,
    FraudPrevention,
    PaymentReferences,
    QrCode,
    Redemption,
    Settlement,
    Stage,
    Usage,
    Validity,
    VendorType,
    Wallet,
    WalletTransaction,
    utcnow,
)

logger = logging.getLogger(__name__)

VENDOR_TYPES = VendorType.__args__
SORTABLE_FIELDS = ("created_at", "updated_at", "code", "title", "category")
RESTRICTED_AFTER_USE = ("value", "type", "category")
CLOSED_STAGES = (Stage.REJECTED, Stage.CANCELLED, Stage.SETTLED)


def vendor_type_for(category: Optional[str]) -> str:
    return category if category in VENDOR_TYPES else "other"


def parse_sort(sort_by: Optional[str]) -> List[Tuple[str, int]]:
    sort_by = (sort_by or "-createdAt").strip()
    direction = DESCENDING if sort_by.startswith("-") else ASCENDING
    field = to_snake(sort_by.lstrip("-+"))
    if field not in SORTABLE_FIELDS:
        raise ValidationError(f"Cannot sort by {sort_by}")
    return [(field, direction)]


def paginate(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def coupon_view(coupon: Coupon, now=None) -> Dict[str, Any]:
    data = coupon.to_api()
    data["remainingUses"] = coupons.remaining_uses(coupon)
    data["daysRemaining"] = coupons.days_remaining(coupon, now)
    return data


def coupon_summary(coupon: Coupon) -> Dict[str, Any]:
    return {
        "code": coupon.code,
        "title": coupon.title,
        "status": coupon.status,
        "validFrom": coupon.validity.start_date.isoformat(),
        "validUntil": coupon.validity.end_date.isoformat(),
        "usedCount": coupon.usage.used_count,
        "maxUses": coupon.usage.max_uses,
    }


def _clean_beneficiary(name=None, phone=None, email=None) -> BeneficiaryContact:
    return BeneficiaryContact(
        name=name.strip() if name and name.strip() else None,
        phone=phone.strip() if phone and phone.strip() else None,
        email=email.strip().lower() if email and email.strip() else None,
    )


@dataclass
class RedemptionResult:
    coupon: Coupon
    amount: float
    wallet_updated: bool = False


class CouponLifecycle:
    def __init__(
        self,
        database: Database,
        dispatcher: Optional[NotificationDispatcher] = None,
        encode_qr: Callable[[str], str] = qr.encode,
        clock: Callable[[], Any] = utcnow,
    ):
        self.coupons = coupons.CouponRepository(database)
        self.wallets = wallets.WalletRepository(database)
        self.users = UserDirectory(database)
        self.partners = PartnerDirectory(database)
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.encode_qr = encode_qr
        self.clock = clock

    # ---------------------- helpers ----------------------
    @staticmethod
    def _require_identity(identity: Optional[Identity], message: str = "Authentication required") -> Identity:
        if identity is None:
            raise UnauthenticatedError(message)
        return identity

    @staticmethod
    def _require_owner(identity: Identity, coupon: Coupon, message: str) -> None:
        if not identity.is_admin and coupon.issuer != identity.id:
            raise ForbiddenError(message)

    @staticmethod
    def _can_view(identity: Optional[Identity], coupon: Coupon) -> bool:
        return coupon.is_public or (identity is not None and (identity.is_admin or identity.id == coupon.issuer))

    def _attach_qr(self, coupon: Coupon) -> None:
        data = qr.dump_payload(coupons.qr_payload(coupon))
        coupon.qr_code = QrCode(url=self.encode_qr(data), data=data)

    def _caller_partner(self, identity: Identity, coupon: Coupon, message: str) -> Optional[PartnerRef]:
        """For partner accounts, their partner record; it must match the coupon's partner if one is set."""
        if identity.role != "partner":
            return None
        partner = self.partners.find_for_user(identity)
        if partner is None or (coupon.partner and coupon.partner != partner.id):
            raise ForbiddenError(message)
        return partner

    def _vendor_user_id(self, partner: PartnerRef) -> Optional[str]:
        if partner.user:
            return partner.user
        vendor = self.users.find_vendor(partner.email, partner.phone)
        return vendor.id if vendor else None

    def _intake(self, coupon: Coupon, wallet: Wallet, processed_by: Optional[str], description: str) -> Wallet:
        """Track the coupon in the wallet and credit its monetary value, once."""
        value = coupons.monetary_value(coupon)
        if wallets.add_coupon(wallet, coupon.id, value) is None:
            logger.info("Coupon %s already tracked in wallet of %s", coupon.code, wallet.vendor)
            return wallet
        if value > 0:
            wallets.add_transaction(
                wallet,
                WalletTransaction(
                    type="coupon_received",
                    amount=value,
                    coupon=coupon.id,
                    description=description,
                    processed_by=processed_by,
                ),
            )
        return self.wallets.save(wallet)

    # ---------------------- purchase ----------------------
    def _build_from_package(
        self,
        code: str,
        pkg: CouponPackage,
        donor: Identity,
        partner_id: Optional[str],
        beneficiary: BeneficiaryContact,
        assign: bool,
        payment: Dict[str, Any],
        sequence_index: int,
    ) -> Coupon:
        now = self.clock()
        validity_days = max(1, pkg.validity_days or 30)
        base_txn_id = payment.get("transaction_id") or f"COUPON-{pkg.id or 'CUSTOM'}"

        coupon = Coupon(
            code=code,
            title=pkg.title,
            description=pkg.description,
            category=pkg.category,
            type=pkg.type,
            value={"kind": "fixed", "amount": pkg.amount, "currency": pkg.currency or config.settings.default_currency},
            issuer=donor.id,
            donor=donor.id,
            partner=partner_id,
            beneficiary=None if beneficiary.is_empty() else beneficiary,
            validity=Validity(start_date=now, end_date=coupons.expires_at(now, validity_days)),
            usage=Usage(max_uses=pkg.max_uses or 1, is_unlimited=pkg.is_unlimited),
            fraud_prevention=FraudPrevention(max_redemptions_per_day=pkg.max_redemptions_per_day or 1),
            package_id=pkg.id,
            package_title=pkg.title,
            package_amount=pkg.amount,
            package_category=pkg.category,
            package_validity_days=validity_days,
            payment_references=PaymentReferences(
                transaction_id=f"{base_txn_id}-{code}-{sequence_index + 1}",
                gateway=payment.get("gateway") or "coupon",
                gateway_id=payment.get("gateway_id"),
                gateway_reference=payment.get("gateway_reference"),
                gateway_details=payment.get("gateway_details"),
            ),
            created_at=now,
            updated_at=now,
        )
        coupons.record_stage_change(coupon, Stage.CREATED, donor.id, f"Purchased from package {pkg.id}")
        if assign:
            coupon.assigned_at = now
            coupon.assigned_by = donor.id
            coupons.advance_stage(coupon, Stage.ASSIGNED, donor.id, "Assigned to beneficiary at purchase")
        self._attach_qr(coupon)
        return coupon

    def purchase(
        self,
        identity: Optional[Identity],
        package_id: str,
        quantity: Optional[int] = 1,
        partner_id: Optional[str] = None,
        beneficiary_name: Optional[str] = None,
        beneficiary_phone: Optional[str] = None,
        beneficiary_email: Optional[str] = None,
        assign_beneficiary: bool = False,
        payment_references: Optional[Dict[str, Any]] = None,
    ) -> Tuple[CouponPackage, List[Coupon]]:
        pkg = get_coupon_package(package_id)
        if pkg is None:
            raise InvalidPackageError()
        donor = self._require_identity(identity, "Authentication required to purchase coupons")

        quantity = min(max(quantity or 1, 1), config.settings.max_purchase_quantity)
        beneficiary = _clean_beneficiary(beneficiary_name, beneficiary_phone, beneficiary_email)
        assign = bool(assign_beneficiary) and not beneficiary.is_empty()
        payment = payment_references or {}

        created: List[Coupon] = []
        # No all-or-nothing guarantee: coupons inserted before a failure stay.
        for i in range(quantity):
            try:
                coupon = self.coupons.insert_with_unique_code(
                    pkg.code_prefix or pkg.id[:4],
                    lambda code: self._build_from_package(code, pkg, donor, partner_id, beneficiary, assign, payment, i),
                )
            except Exception:
                logger.error(
                    "Purchase of %s by %s failed at coupon %d/%d; %d already created: %s",
                    pkg.id,
                    donor.id,
                    i + 1,
                    quantity,
                    len(created),
                    [c.code for c in created],
                )
                raise
            created.append(coupon)
        logger.info("Donor %s purchased %d coupon(s) from %s", donor.id, len(created), pkg.id)
        return pkg, created

    # ---------------------- ad hoc creation & CRUD ----------------------
    def create(
        self,
        identity: Optional[Identity],
        title: str,
        category: str,
        value: Dict[str, Any],
        validity: Dict[str, Any],
        description: Optional[str] = None,
        type: str = "discount",
        partner: Optional[str] = None,
        donor: Optional[str] = None,
        beneficiary: Optional[Dict[str, Any]] = None,
        usage: Optional[Dict[str, Any]] = None,
        terms: Optional[List[str]] = None,
        is_public: bool = True,
        status: str = "active",
    ) -> Coupon:
        issuer = self._require_identity(identity)
        now = self.clock()
        validity = {key: val for key, val in validity.items() if val is not None}
        validity.setdefault("start_date", now)
        validity.setdefault("is_active", True)

        def build(code: str) -> Coupon:
            coupon = Coupon(
                code=code,
                title=title,
                description=description,
                category=category,
                type=type,
                value=value,
                issuer=issuer.id,
                donor=donor or issuer.id,
                partner=partner,
                beneficiary=beneficiary,
                validity=validity,
                usage=usage or {},
                terms=terms or [],
                is_public=is_public,
                status=status,
                created_at=now,
                updated_at=now,
            )
            if coupon.validity.end_date < coupon.validity.start_date:
                raise ValidationError("End date must be after start date")
            coupons.record_stage_change(coupon, Stage.CREATED, issuer.id, "Coupon created")
            self._attach_qr(coupon)
            return coupon

        coupon = self.coupons.insert_with_unique_code(category[:3], build)
        logger.info("Coupon %s created by %s", coupon.code, issuer.id)
        return coupon

    def get(self, identity: Optional[Identity], coupon_id: str) -> Coupon:
        coupon = self.coupons.get(coupon_id)
        if not self._can_view(identity, coupon):
            raise ForbiddenError("You do not have permission to view this coupon")
        self.coupons.increment_views(coupon)
        return coupon

    def list(
        self,
        identity: Optional[Identity],
        page: int = 1,
        limit: int = 20,
        category: Optional[str] = None,
        type: Optional[str] = None,
        status: Optional[str] = "active",
        sort_by: Optional[str] = None,
    ) -> Tuple[List[Coupon], Dict[str, int]]:
        query: Dict[str, Any] = {}
        if identity is None or not identity.is_admin:
            query.update(
                {
                    "status": "active",
                    "is_public": True,
                    "validity.is_active": True,
                    "validity.end_date": {"$gte": self.clock()},
                }
            )
        elif status:
            query["status"] = status
        if category:
            query["category"] = category
        if type:
            query["type"] = type

        items = self.coupons.find(query, skip=(page - 1) * limit, limit=limit, sort=parse_sort(sort_by))
        return items, paginate(page, limit, self.coupons.count(query))

    def my_coupons(
        self, identity: Optional[Identity], page: int = 1, limit: int = 10, status: Optional[str] = None
    ) -> Tuple[List[Coupon], Dict[str, int]]:
        user = self._require_identity(identity)
        query: Dict[str, Any] = {"issuer": user.id}
        if status:
            query["status"] = status
        items = self.coupons.find(query, skip=(page - 1) * limit, limit=limit)
        return items, paginate(page, limit, self.coupons.count(query))

    def update(self, identity: Optional[Identity], coupon_id: str, changes: Dict[str, Any]) -> Coupon:
        user = self._require_identity(identity)
        coupon = self.coupons.get(coupon_id)
        self._require_owner(user, coupon, "You do not have permission to update this coupon")

        changes = dict(changes)
        if "status" in changes and coupon.stage in CLOSED_STAGES:
            raise InvalidStateError(f"Cannot change the status of a {coupon.stage.lower()} coupon")
        if coupon.usage.used_count > 0:
            for field in RESTRICTED_AFTER_USE:
                if changes.pop(field, None) is not None:
                    logger.info("Ignoring change to %s on used coupon %s", field, coupon.code)

        merged = coupon.model_dump()
        for key, val in changes.items():
            if isinstance(val, dict) and isinstance(merged.get(key), dict) and key != "value":
                merged[key] = {**merged[key], **val}
            else:
                merged[key] = val
        updated = Coupon.model_validate(merged)
        if updated.validity.end_date < updated.validity.start_date:
            raise ValidationError("End date must be after start date")
        if not updated.usage.is_unlimited and updated.usage.max_uses < updated.usage.used_count:
            raise ValidationError("maxUses cannot be lower than the number of redemptions")
        return self.coupons.save(updated)

    def delete(self, identity: Optional[Identity], coupon_id: str) -> None:
        user = self._require_identity(identity)
        coupon = self.coupons.get(coupon_id)
        self._require_owner(user, coupon, "You do not have permission to delete this coupon")
        if coupon.usage.used_count > 0:
            raise InvalidStateError("Cannot delete coupon that has been redeemed. You can deactivate it instead.")
        self.coupons.delete(coupon)
        logger.info("Coupon %s deleted by %s", coupon.code, user.id)

    def analytics(self, identity: Optional[Identity], coupon_id: str) -> Dict[str, Any]:
        user = self._require_identity(identity)
        coupon = self.coupons.get(coupon_id)
        self._require_owner(user, coupon, "You do not have permission to view analytics")

        usage = coupon.usage
        daily: Dict[str, int] = {}
        for r in coupon.redemptions:
            day = r.redeemed_at.date().isoformat()
            daily[day] = daily.get(day, 0) + 1

        return {
            "overview": {
                "totalViews": coupon.analytics.views,
                "totalShares": coupon.analytics.shares,
                "totalDownloads": coupon.analytics.downloads,
                "totalRedemptions": usage.used_count,
                "remainingUses": coupons.remaining_uses(coupon),
                "redemptionRate": round(usage.used_count / usage.max_uses * 100) if usage.max_uses else 0,
            },
            "redemptionTimeline": [
                {"date": r.redeemed_at.isoformat(), "amount": r.amount, "partner": r.partner} for r in coupon.redemptions
            ],
            "dailyRedemptions": daily,
            "status": coupon.status,
            "stage": coupon.stage,
            "daysRemaining": coupons.days_remaining(coupon, self.clock()),
        }

    # ---------------------- public lookups ----------------------
    def get_by_code(self, identity: Optional[Identity], code: str) -> Coupon:
        code = coupons.normalize_code(code)
        if not code:
            raise ValidationError("Coupon code is required")
        coupon = self.coupons.find_by_code(code)
        if coupon is None:
            raise NotFoundError("Invalid coupon code. Please check the code and try again.")
        if not self._can_view(identity, coupon):
            raise ForbiddenError("This coupon is not publicly available")
        reason = coupons.unredeemable_reason(coupon, self.clock())
        if reason:
            raise NotRedeemableError(reason, data=coupon_summary(coupon))
        return coupon

    def validate(self, code: str) -> Tuple[bool, Coupon]:
        code = coupons.normalize_code(code)
        coupon = self.coupons.find_by_code(code) if code else None
        if coupon is None:
            raise NotFoundError("Invalid coupon code")
        return coupons.is_redeemable(coupon, self.clock()), coupon

    # ---------------------- stage operations ----------------------
    def assign(
        self,
        identity: Optional[Identity],
        coupon_id: str,
        beneficiary_name: Optional[str] = None,
        beneficiary_phone: Optional[str] = None,
        beneficiary_email: Optional[str] = None,
        partner_id: Optional[str] = None,
    ) -> Coupon:
        user = self._require_identity(identity)
        coupon = self.coupons.get(coupon_id)
        if coupon.stage not in (Stage.CREATED, Stage.ASSIGNED):
            raise InvalidStateError("Coupon cannot be assigned in its current stage")
        self._require_owner(user, coupon, "You can only assign your own coupons")

        contact = _clean_beneficiary(beneficiary_name, beneficiary_phone, beneficiary_email)
        current = coupon.beneficiary or BeneficiaryContact()
        coupon.beneficiary = BeneficiaryContact(
            name=contact.name or current.name,
            phone=contact.phone or current.phone,
            email=contact.email or current.email,
        )
        if partner_id:
            coupon.partner = partner_id
        coupon.assigned_at = self.clock()
        coupon.assigned_by = user.id
        coupons.advance_stage(coupon, Stage.ASSIGNED, user.id, "Assigned to beneficiary")
        return self.coupons.save(coupon)

    def redeem(
        self,
        identity: Optional[Identity],
        coupon_id: str,
        partner_id: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        purchase_amount: Optional[float] = None,
    ) -> RedemptionResult:
        user = self._require_identity(identity)
        coupon = self.coupons.get(coupon_id)
        now = self.clock()

        if not coupons.is_redeemable(coupon, now):
            raise NotRedeemableError()

        caller_partner = self._caller_partner(user, coupon, "You are not authorized to redeem this coupon")

        tz = ZoneInfo(config.settings.redemption_timezone)
        if coupons.redemptions_on_day(coupon, now, tz) >= coupon.fraud_prevention.max_redemptions_per_day:
            raise DailyLimitReachedError()

        if coupon.stage != Stage.REDEEMED_PENDING_SETTLEMENT:
            coupons.ensure_transition(coupon, Stage.REDEEMED_PENDING_SETTLEMENT)

        if caller_partner is not None:
            # partners book redemptions to their own record only
            if partner_id and partner_id != caller_partner.id:
                raise ForbiddenError("Partners can only redeem on their own behalf")
            final_partner_id = caller_partner.id
        else:
            final_partner_id = partner_id or coupon.partner

        amount = coupons.redemption_amount(coupon, purchase_amount)

        # Usage and stage are separate steps, applied together here.
        coupons.record_usage(
            coupon,
            Redemption(
                redeemed_by=user.id,
                redeemed_at=now,
                amount=amount,
                purchase_amount=purchase_amount,
                partner=final_partner_id,
                location=location or {},
                notes=notes or "",
            ),
        )
        coupons.advance_stage(coupon, Stage.REDEEMED_PENDING_SETTLEMENT, user.id, f"Redeemed for {amount:.2f}")
        self.coupons.save(coupon)
        logger.info("Coupon %s redeemed by %s for %.2f", coupon.code, user.id, amount)

        result = RedemptionResult(coupon=coupon, amount=amount)
        if final_partner_id:
            try:
                result.wallet_updated = self._book_redemption(coupon, final_partner_id, amount, user.id)
            except Exception:
                logger.error(
                    "Coupon %s redeemed but the partner wallet update failed", coupon.code, exc_info=True
                )
        return result

    def _book_redemption(self, coupon: Coupon, partner_id: str, amount: float, processed_by: str) -> bool:
        partner = self.partners.get(partner_id)
        if partner is None:
            logger.warning("Coupon %s redeemed for unknown partner %s", coupon.code, partner_id)
            return False

        updated = False
        vendor_id = self._vendor_user_id(partner)
        if vendor_id:
            wallet = self.wallets.get_or_create(vendor_id, vendor_type_for(partner.category))
            if wallets.find_coupon_entry(wallet, coupon.id, status="pending") is not None:
                wallets.redeem_coupon(wallet, coupon.id, amount, processed_by, f"Coupon {coupon.code} redeemed")
                self.wallets.save(wallet)
                updated = True
        else:
            logger.info("Partner %s has no linked user account; wallet not updated", partner.id)

        self.partners.record_redemption(partner.id, amount)
        return updated

    def settle(
        self,
        identity: Optional[Identity],
        coupon_id: str,
        amount: Optional[float] = None,
        reference_no: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Coupon:
        user = self._require_identity(identity)
        coupon = self.coupons.get(coupon_id)
        if coupon.stage != Stage.REDEEMED_PENDING_SETTLEMENT:
            raise InvalidStateError("Only redeemed coupons can be settled")

        latest = coupon.redemptions[-1] if coupon.redemptions else None
        payable = amount if amount is not None else (latest.amount if latest else 0)
        now = self.clock()
        coupon.settlement = Settlement(
            payable_amount=round(payable, 2), approved_by=user.id, reference_no=reference_no or "", paid_on=now
        )
        coupon.settled_at = now
        coupons.advance_stage(coupon, Stage.SETTLED, user.id, notes or "Settlement approved")
        return self.coupons.save(coupon)

    def reject(
        self, identity: Optional[Identity], coupon_id: str, reason: Optional[str] = None, mark_as: Optional[str] = None
    ) -> Coupon:
        user = self._require_identity(identity)
        coupon = self.coupons.get(coupon_id)
        if coupon.stage == Stage.SETTLED:
            raise InvalidStateError("Settled coupons cannot be rejected")
        self._caller_partner(user, coupon, "You are not authorized to reject this coupon")

        target = Stage.CANCELLED if mark_as == Stage.CANCELLED else Stage.REJECTED
        coupon.rejection_reason = reason or "Rejected by partner/admin"
        coupons.advance_stage(coupon, target, user.id, reason or "Coupon rejected")
        coupon.status = "cancelled"
        return self.coupons.save(coupon)

    # ---------------------- delivery & wallet intake ----------------------
    def send(
        self,
        identity: Optional[Identity],
        coupon_id: str,
        recipient: Optional[Dict[str, Any]] = None,
        methods: Optional[Dict[str, Any]] = None,
        partner_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        user = self._require_identity(identity)
        coupon = self.coupons.get(coupon_id)
        recipient = recipient or {}
        methods = methods or {}

        partner = self.partners.get(partner_id or coupon.partner)
        if partner is None and recipient:
            partner = self.partners.find_by_contact(recipient.get("email"), recipient.get("phone"))
        if partner is not None:
            coupon.partner = partner.id
            if coupon.status == "inactive":
                coupon.status = "active"

        current = coupon.delivery_method.model_dump()
        delivery = {ch: methods.get(ch) is not False and current.get(ch, True) is not False for ch in CHANNELS}
        coupon.delivery_method = DeliveryMethod(**delivery)

        try:
            results = self.dispatcher.send_coupon(coupon, recipient, delivery)
        except Exception:
            logger.error("Notification dispatch for coupon %s failed", coupon.code, exc_info=True)
            results = {}

        self.coupons.save(coupon)

        if partner is not None:
            try:
                vendor_id = self._vendor_user_id(partner)
                if vendor_id:
                    wallet = self.wallets.get_or_create(vendor_id, vendor_type_for(partner.category or coupon.category))
                    self._intake(coupon, wallet, user.id, f"Coupon {coupon.code} received")
                else:
                    logger.info("Partner %s has no linked user account; wallet not updated", partner.id)
            except Exception:
                logger.error("Coupon %s sent but adding it to the partner wallet failed", coupon.code, exc_info=True)
        return results

    def add_to_wallet(self, identity: Optional[Identity], coupon_id: str, vendor_id: str) -> Wallet:
        user = self._require_identity(identity)
        if not vendor_id:
            raise ValidationError("vendorId is required")
        coupon = self.coupons.get(coupon_id)
        wallet = self.wallets.find_by_vendor(vendor_id)
        if wallet is None:
            if self.users.get(vendor_id) is None:
                raise NotFoundError("Vendor not found")
            wallet = self.wallets.get_or_create(vendor_id)
        return self._intake(coupon, wallet, user.id, f"Coupon {coupon.code} added to wallet")
