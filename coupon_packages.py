"""
Coupon package catalog

Static templates donors can buy coupons from. Packages are defined once at import
time and never mutated; purchases copy fields out of them.
"""

from dataclasses import asdict, dataclass
from typing import List, Optional, Tuple

from pydantic.alias_generators import to_camel


@dataclass(frozen=True)
class CouponPackage:
    id: str
    title: str
    description: str
    category: str
    type: str
    amount: float
    currency: str
    validity_days: int
    max_uses: int
    is_unlimited: bool
    max_redemptions_per_day: int
    code_prefix: str
    partner_categories: Tuple[str, ...] = ()
    recommended_partners: Tuple[str, ...] = ()

    def summary(self) -> dict:
        """Public view of the package, without internal code settings."""
        data = asdict(self)
        for key in ("is_unlimited", "max_redemptions_per_day", "code_prefix"):
            data.pop(key)
        data["partner_categories"] = list(self.partner_categories)
        data["recommended_partners"] = list(self.recommended_partners)
        return {to_camel(key): value for key, value in data.items()}


COUPON_PACKAGES: Tuple[CouponPackage, ...] = (
    CouponPackage(
        id="FOOD_100",
        title="Food Coupon – ₹100",
        description="Redeem a ₹100 food voucher at any partner restaurant or food server. Valid for one meal.",
        category="food",
        type="discount",
        amount=100,
        currency="INR",
        validity_days=30,
        max_uses=1,
        is_unlimited=False,
        max_redemptions_per_day=1,
        code_prefix="FOOD",
        partner_categories=("food", "food_server", "restaurant"),
        recommended_partners=("food",),
    ),
    CouponPackage(
        id="HEALTH_500",
        title="Health Checkup – ₹500",
        description="Cover diagnostics and consultation up to ₹500 at verified health partners.",
        category="medical",
        type="discount",
        amount=500,
        currency="INR",
        validity_days=60,
        max_uses=1,
        is_unlimited=False,
        max_redemptions_per_day=1,
        code_prefix="HEAL",
        partner_categories=("medical", "pathology_lab", "hospital"),
        recommended_partners=("medical",),
    ),
)

_BY_ID = {pkg.id: pkg for pkg in COUPON_PACKAGES}


def get_coupon_package(package_id: Optional[str]) -> Optional[CouponPackage]:
    if not package_id:
        return None
    return _BY_ID.get(package_id)


def list_coupon_packages() -> List[dict]:
    return [pkg.summary() for pkg in COUPON_PACKAGES]
