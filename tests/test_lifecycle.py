from datetime import timedelta

import pytest

import config
import coupons
from coupons import CouponRepository
from errors import (
    ConflictError,
    DailyLimitReachedError,
    ForbiddenError,
    InvalidPackageError,
    InvalidStateError,
    NotFoundError,
    NotRedeemableError,
    UnauthenticatedError,
    ValidationError,
)
from notifications import NotificationDispatcher
from schemas import Stage
from wallets import WalletRepository


@pytest.fixture
def health_coupon(lifecycle, donor, partner_id):
    _, created = lifecycle.purchase(donor, "HEALTH_500", partner_id=partner_id)
    return created[0]


def wallet_of(db, identity):
    return WalletRepository(db).find_by_vendor(identity.id)


# ---------------------- purchase ----------------------
def test_purchase_creates_distinct_coupons(lifecycle, donor, db, now):
    pkg, created = lifecycle.purchase(donor, "FOOD_100", quantity=5)

    assert pkg.id == "FOOD_100"
    assert len(created) == 5
    assert len({c.code for c in created}) == 5
    assert db["coupon"].count_documents({}) == 5
    for coupon in created:
        assert coupon.code.startswith("FOOD-")
        assert coupon.value.amount == 100
        assert coupon.validity.start_date == now
        assert coupon.validity.end_date - coupon.validity.start_date == timedelta(days=30)
        assert coupon.usage.max_uses == 1
        assert coupon.stage == Stage.CREATED
        assert [entry.stage for entry in coupon.stage_history] == [Stage.CREATED]
        assert coupon.code in coupon.qr_code.data
    assert len({c.payment_references.transaction_id for c in created}) == 5


def test_purchase_checks_package_before_identity(lifecycle, donor):
    with pytest.raises(InvalidPackageError):
        lifecycle.purchase(None, "NOPE")
    with pytest.raises(UnauthenticatedError):
        lifecycle.purchase(None, "FOOD_100")


def test_purchase_quantity_is_clamped(lifecycle, donor, db, monkeypatch):
    monkeypatch.setattr(config.settings, "max_purchase_quantity", 3)
    _, created = lifecycle.purchase(donor, "FOOD_100", quantity=10)
    assert len(created) == 3
    _, created = lifecycle.purchase(donor, "FOOD_100", quantity=0)
    assert len(created) == 1


def test_purchase_can_assign_beneficiary(lifecycle, donor):
    _, created = lifecycle.purchase(
        donor, "FOOD_100", beneficiary_name=" Ravi ", beneficiary_email="RAVI@example.org", assign_beneficiary=True
    )
    coupon = created[0]
    assert coupon.stage == Stage.ASSIGNED
    assert coupon.beneficiary.name == "Ravi"
    assert coupon.beneficiary.email == "ravi@example.org"
    assert [entry.stage for entry in coupon.stage_history] == [Stage.CREATED, Stage.ASSIGNED]


def test_assign_flag_without_beneficiary_is_ignored(lifecycle, donor):
    _, created = lifecycle.purchase(donor, "FOOD_100", assign_beneficiary=True)
    assert created[0].stage == Stage.CREATED
    assert created[0].beneficiary is None


def test_code_collision_found_before_insert_is_regenerated(lifecycle, donor, monkeypatch):
    codes = iter(["FOOD-AAAAAA", "FOOD-AAAAAA", "FOOD-BBBBBB"])
    monkeypatch.setattr(coupons, "generate_code_candidate", lambda prefix, suffix_length=None: next(codes))

    _, created = lifecycle.purchase(donor, "FOOD_100", quantity=2)
    assert [c.code for c in created] == ["FOOD-AAAAAA", "FOOD-BBBBBB"]


def test_code_collision_on_insert_is_retried(lifecycle, donor, monkeypatch):
    codes = iter(["FOOD-AAAAAA", "FOOD-AAAAAA", "FOOD-BBBBBB"])
    monkeypatch.setattr(coupons, "generate_code_candidate", lambda prefix, suffix_length=None: next(codes))
    monkeypatch.setattr(CouponRepository, "code_exists", lambda self, code: False)

    _, created = lifecycle.purchase(donor, "FOOD_100", quantity=2)
    assert [c.code for c in created] == ["FOOD-AAAAAA", "FOOD-BBBBBB"]


def test_code_generation_gives_up(lifecycle, donor, db, monkeypatch):
    monkeypatch.setattr(config.settings, "code_max_attempts", 3)
    monkeypatch.setattr(coupons, "generate_code_candidate", lambda prefix, suffix_length=None: "FOOD-AAAAAA")

    lifecycle.purchase(donor, "FOOD_100")
    with pytest.raises(ConflictError):
        lifecycle.purchase(donor, "FOOD_100", quantity=2)
    assert db["coupon"].count_documents({}) == 1


def test_failed_purchase_keeps_coupons_already_created(lifecycle, donor, db, monkeypatch, caplog):
    monkeypatch.setattr(config.settings, "code_max_attempts", 3)
    monkeypatch.setattr(coupons, "generate_code_candidate", lambda prefix, suffix_length=None: "FOOD-AAAAAA")

    with pytest.raises(ConflictError):
        lifecycle.purchase(donor, "FOOD_100", quantity=3)

    stored = list(db["coupon"].find({}))
    assert [doc["code"] for doc in stored] == ["FOOD-AAAAAA"]
    assert "failed at coupon 2/3" in caplog.text
    assert "FOOD-AAAAAA" in caplog.text


# ---------------------- redemption ----------------------
def test_health_coupon_end_to_end(lifecycle, db, admin, partner_user, partner_id, health_coupon):
    lifecycle.send(admin, health_coupon.id)
    wallet = wallet_of(db, partner_user)
    assert wallet.current_balance == 500
    assert wallet.total_received == 500
    assert wallet.vendor_type == "restaurant"

    result = lifecycle.redeem(partner_user, health_coupon.id)
    assert result.amount == 500
    assert result.wallet_updated is True
    assert result.coupon.stage == Stage.REDEEMED_PENDING_SETTLEMENT
    assert result.coupon.usage.used_count == 1
    assert result.coupon.redemptions[0].partner == partner_id

    wallet = wallet_of(db, partner_user)
    assert wallet.current_balance == 0
    assert wallet.total_redeemed == 500
    assert [tx.type for tx in wallet.transactions] == ["coupon_received", "coupon_redeemed"]

    partner = db["partner"].find_one({"user": partner_user.id})
    assert partner["analytics"]["total_redemptions"] == 1
    assert partner["analytics"]["total_revenue"] == 500

    with pytest.raises(NotRedeemableError):
        lifecycle.redeem(partner_user, health_coupon.id)


def test_daily_limit_blocks_second_redemption(lifecycle, lifecycle_at, partner_user, percentage_coupon, now):
    lifecycle.redeem(partner_user, percentage_coupon.id, purchase_amount=100)
    with pytest.raises(DailyLimitReachedError):
        lifecycle.redeem(partner_user, percentage_coupon.id, purchase_amount=100)
    assert lifecycle.coupons.get(percentage_coupon.id).usage.used_count == 1

    result = lifecycle_at(now + timedelta(days=1)).redeem(partner_user, percentage_coupon.id, purchase_amount=50)
    assert result.amount == 5
    assert result.coupon.usage.used_count == 2
    stages = [entry.stage for entry in result.coupon.stage_history]
    assert stages.count(Stage.REDEEMED_PENDING_SETTLEMENT) == 1


def test_percentage_redemption_keeps_wallet_balance(lifecycle, db, admin, partner_user, percentage_coupon):
    lifecycle.send(admin, percentage_coupon.id)
    wallet = wallet_of(db, partner_user)
    assert wallet.current_balance == 0
    assert wallet.transactions == []
    assert len(wallet.coupons) == 1

    result = lifecycle.redeem(partner_user, percentage_coupon.id, purchase_amount=200)
    assert result.amount == 20
    assert result.wallet_updated is True

    wallet = wallet_of(db, partner_user)
    assert wallet.current_balance == 0
    assert wallet.total_redeemed == 20
    assert wallet.transactions[0].balance_neutral is True


def test_percentage_redemption_can_require_purchase(lifecycle, partner_user, percentage_coupon, monkeypatch):
    monkeypatch.setattr(config.settings, "percentage_redemption_policy", config.PERCENTAGE_POLICY_REQUIRE_PURCHASE)
    with pytest.raises(ValidationError):
        lifecycle.redeem(partner_user, percentage_coupon.id)
    coupon = lifecycle.coupons.get(percentage_coupon.id)
    assert coupon.usage.used_count == 0
    assert coupon.stage == Stage.CREATED


def test_wallet_failure_does_not_undo_redemption(lifecycle, db, admin, partner_user, health_coupon, monkeypatch):
    lifecycle.send(admin, health_coupon.id)

    def broken_save(self, wallet):
        raise RuntimeError("wallet store unavailable")

    monkeypatch.setattr(WalletRepository, "save", broken_save)
    result = lifecycle.redeem(partner_user, health_coupon.id)

    assert result.wallet_updated is False
    stored = lifecycle.coupons.get(health_coupon.id)
    assert stored.stage == Stage.REDEEMED_PENDING_SETTLEMENT
    assert stored.usage.used_count == 1
    wallet = wallet_of(db, partner_user)
    assert wallet.current_balance == 500
    assert wallet.total_redeemed == 0


def test_partner_redeems_on_own_behalf(lifecycle, donor, partner_user, partner_id, other_partner):
    _, lab_partner_id = other_partner
    _, created = lifecycle.purchase(donor, "FOOD_100")
    coupon = created[0]

    with pytest.raises(ForbiddenError):
        lifecycle.redeem(partner_user, coupon.id, partner_id=lab_partner_id)
    assert lifecycle.coupons.get(coupon.id).usage.used_count == 0

    result = lifecycle.redeem(partner_user, coupon.id)
    assert result.coupon.redemptions[0].partner == partner_id


def test_other_partner_cannot_redeem(lifecycle, other_partner, health_coupon):
    lab_user, _ = other_partner
    with pytest.raises(ForbiddenError):
        lifecycle.redeem(lab_user, health_coupon.id)
    assert lifecycle.coupons.get(health_coupon.id).usage.used_count == 0


def test_redeem_without_wallet_entry_still_succeeds(lifecycle, db, partner_user, health_coupon):
    result = lifecycle.redeem(partner_user, health_coupon.id)
    assert result.wallet_updated is False
    assert result.coupon.stage == Stage.REDEEMED_PENDING_SETTLEMENT
    assert wallet_of(db, partner_user).total_redeemed == 0


def test_redeem_after_expiry(lifecycle_at, partner_user, health_coupon, now):
    with pytest.raises(NotRedeemableError):
        lifecycle_at(now + timedelta(days=61)).redeem(partner_user, health_coupon.id)


# ---------------------- settle / reject / assign ----------------------
def test_settle_requires_pending_settlement(lifecycle, admin, partner_user, health_coupon):
    with pytest.raises(InvalidStateError):
        lifecycle.settle(admin, health_coupon.id)

    lifecycle.redeem(partner_user, health_coupon.id)
    coupon = lifecycle.settle(admin, health_coupon.id, reference_no="UTR-42")
    assert coupon.stage == Stage.SETTLED
    assert coupon.settlement.payable_amount == 500
    assert coupon.settlement.reference_no == "UTR-42"

    with pytest.raises(InvalidStateError):
        lifecycle.reject(admin, health_coupon.id, reason="too late")
    with pytest.raises(InvalidStateError):
        lifecycle.settle(admin, health_coupon.id)


@pytest.mark.parametrize("mark_as", [Stage.REJECTED, Stage.CANCELLED])
def test_rejected_coupon_cannot_be_reactivated(lifecycle, admin, donor, health_coupon, mark_as):
    lifecycle.reject(admin, health_coupon.id, reason="Suspected fraud", mark_as=mark_as)

    with pytest.raises(InvalidStateError):
        lifecycle.update(donor, health_coupon.id, {"status": "active"})

    valid, coupon = lifecycle.validate(health_coupon.code)
    assert valid is False
    assert coupon.status == "cancelled"
    assert lifecycle.update(donor, health_coupon.id, {"title": "Archived"}).title == "Archived"


def test_settled_coupon_status_is_frozen(lifecycle, admin, donor, partner_user, health_coupon):
    lifecycle.redeem(partner_user, health_coupon.id)
    lifecycle.settle(admin, health_coupon.id)
    with pytest.raises(InvalidStateError):
        lifecycle.update(admin, health_coupon.id, {"status": "inactive"})


def test_reject_cancels_coupon(lifecycle, admin, partner_user, health_coupon):
    coupon = lifecycle.reject(admin, health_coupon.id, reason="Duplicate order", mark_as=Stage.CANCELLED)
    assert coupon.stage == Stage.CANCELLED
    assert coupon.status == "cancelled"
    assert coupon.rejection_reason == "Duplicate order"

    with pytest.raises(NotRedeemableError):
        lifecycle.redeem(partner_user, health_coupon.id)


def test_assign_is_limited_to_owner(lifecycle, donor, other_donor, health_coupon):
    with pytest.raises(ForbiddenError):
        lifecycle.assign(other_donor, health_coupon.id, beneficiary_name="Someone")

    coupon = lifecycle.assign(donor, health_coupon.id, beneficiary_phone="9876543210")
    assert coupon.stage == Stage.ASSIGNED
    assert coupon.beneficiary.phone == "9876543210"


def test_assign_after_redemption_is_rejected(lifecycle, donor, partner_user, health_coupon):
    lifecycle.redeem(partner_user, health_coupon.id)
    with pytest.raises(InvalidStateError):
        lifecycle.assign(donor, health_coupon.id, beneficiary_name="Late")


def test_concurrent_save_conflicts(lifecycle, health_coupon):
    first = lifecycle.coupons.get(health_coupon.id)
    second = lifecycle.coupons.get(health_coupon.id)
    first.title = "Renamed"
    lifecycle.coupons.save(first)
    second.title = "Renamed again"
    with pytest.raises(ConflictError):
        lifecycle.coupons.save(second)
    assert lifecycle.coupons.get(health_coupon.id).title == "Renamed"


# ---------------------- lookups & CRUD ----------------------
def test_get_by_code(lifecycle, lifecycle_at, health_coupon, now):
    assert lifecycle.get_by_code(None, health_coupon.code.lower()).id == health_coupon.id

    with pytest.raises(NotFoundError):
        lifecycle.get_by_code(None, "NOPE-123456")

    with pytest.raises(NotRedeemableError) as excinfo:
        lifecycle_at(now + timedelta(days=90)).get_by_code(None, health_coupon.code)
    assert excinfo.value.message == "Coupon has expired"
    assert excinfo.value.data["code"] == health_coupon.code


def test_validate(lifecycle, health_coupon):
    valid, coupon = lifecycle.validate(health_coupon.code)
    assert valid is True
    assert coupon.id == health_coupon.id
    with pytest.raises(NotFoundError):
        lifecycle.validate("NOPE-123456")


def test_update_after_use_keeps_value(lifecycle, donor, partner_user, percentage_coupon, now):
    lifecycle.redeem(partner_user, percentage_coupon.id, purchase_amount=10)
    coupon = lifecycle.update(
        donor, percentage_coupon.id, {"title": "Groceries", "value": {"kind": "percentage", "percentage": 50}}
    )
    assert coupon.title == "Groceries"
    assert coupon.value.percentage == 10
    assert coupon.usage.max_uses == 3

    with pytest.raises(ValidationError):
        lifecycle.update(donor, percentage_coupon.id, {"validity": {"end_date": now - timedelta(days=10)}})


def test_delete_only_unused(lifecycle, donor, other_donor, partner_user, health_coupon, percentage_coupon):
    with pytest.raises(ForbiddenError):
        lifecycle.delete(other_donor, health_coupon.id)

    lifecycle.redeem(partner_user, percentage_coupon.id, purchase_amount=10)
    with pytest.raises(InvalidStateError):
        lifecycle.delete(donor, percentage_coupon.id)

    lifecycle.delete(donor, health_coupon.id)
    with pytest.raises(NotFoundError):
        lifecycle.coupons.get(health_coupon.id)


# ---------------------- delivery ----------------------
def test_send_resolves_partner_from_recipient(lifecycle, db, admin, donor, partner_user, partner_id):
    _, created = lifecycle.purchase(donor, "FOOD_100")
    results = lifecycle.send(admin, created[0].id, recipient={"email": "KITCHEN@example.org"})

    assert results["email"]["success"] is True
    assert results["sms"]["success"] is False
    assert lifecycle.coupons.get(created[0].id).partner == partner_id
    assert wallet_of(db, partner_user).current_balance == 100


def test_add_to_wallet_is_idempotent(lifecycle, db, admin, partner_user, health_coupon, unknown_id):
    with pytest.raises(NotFoundError):
        lifecycle.add_to_wallet(admin, health_coupon.id, unknown_id)

    lifecycle.add_to_wallet(admin, health_coupon.id, partner_user.id)
    wallet = lifecycle.add_to_wallet(admin, health_coupon.id, partner_user.id)
    assert wallet.current_balance == 500
    assert len(wallet.coupons) == 1
    assert len(wallet.transactions) == 1


class BrokenDispatcher(NotificationDispatcher):
    def send_coupon(self, coupon, recipient, methods):
        raise RuntimeError("sms gateway down")


def test_dispatch_failure_still_delivers_to_wallet(lifecycle, db, admin, partner_user, partner_id, health_coupon):
    lifecycle.dispatcher = BrokenDispatcher()

    results = lifecycle.send(admin, health_coupon.id, recipient={"phone": "9876543210"})

    assert results == {}
    assert lifecycle.coupons.get(health_coupon.id).partner == partner_id
    assert wallet_of(db, partner_user).current_balance == 500
