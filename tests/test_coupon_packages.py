import dataclasses

import pytest

from coupon_packages import COUPON_PACKAGES, get_coupon_package, list_coupon_packages


def test_get_known_package():
    pkg = get_coupon_package("FOOD_100")
    assert pkg.amount == 100
    assert pkg.validity_days == 30
    assert pkg.max_uses == 1
    assert pkg.category == "food"


@pytest.mark.parametrize("package_id", ["NOPE", "", None, "food_100"])
def test_unknown_package_is_none(package_id):
    assert get_coupon_package(package_id) is None


def test_packages_are_immutable():
    pkg = get_coupon_package("HEALTH_500")
    with pytest.raises(dataclasses.FrozenInstanceError):
        pkg.amount = 1


def test_summary_is_camel_case_and_hides_code_settings():
    summaries = list_coupon_packages()
    assert [s["id"] for s in summaries] == [pkg.id for pkg in COUPON_PACKAGES]
    health = next(s for s in summaries if s["id"] == "HEALTH_500")
    assert health["validityDays"] == 60
    assert health["maxUses"] == 1
    assert health["partnerCategories"] == ["medical", "pathology_lab", "hospital"]
    assert "codePrefix" not in health
    assert "maxRedemptionsPerDay" not in health
