"""
User and partner lookups

Accounts and partner records are managed elsewhere; the coupon backend only
reads them (and bumps partner redemption analytics).
"""

import re
from dataclasses import dataclass
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.database import Database

VENDOR_ROLES = ("partner", "vendor")
ACTIVE_PARTNER_STATUSES = ("approved", "active")


def _object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _digits(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


@dataclass(frozen=True)
class Identity:
    id: str
    role: str
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class PartnerRef:
    id: str
    user: Optional[str]
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None


def _identity(doc: dict) -> Identity:
    return Identity(id=str(doc["_id"]), role=doc.get("role", "user"), email=doc.get("email"), name=doc.get("name"))


def _partner(doc: dict) -> PartnerRef:
    user = doc.get("user")
    return PartnerRef(
        id=str(doc["_id"]),
        user=str(user) if user else None,
        name=doc.get("name", ""),
        email=doc.get("email"),
        phone=doc.get("phone"),
        category=doc.get("category"),
    )


class UserDirectory:
    def __init__(self, database: Database):
        self.collection = database["user"]

    def get(self, user_id: str) -> Optional[Identity]:
        oid = _object_id(user_id)
        if oid is None:
            return None
        doc = self.collection.find_one({"_id": oid})
        if doc is None or doc.get("is_active", True) is False:
            return None
        return _identity(doc)

    def find_vendor(self, email: Optional[str] = None, phone: Optional[str] = None) -> Optional[Identity]:
        """Vendor account matching a partner's contact details."""
        doc = None
        if email:
            doc = self.collection.find_one({"email": email.lower(), "role": {"$in": list(VENDOR_ROLES)}})
        if doc is None and phone:
            doc = self.collection.find_one(
                {"phone": {"$in": [phone, _digits(phone)]}, "role": {"$in": list(VENDOR_ROLES)}}
            )
        return _identity(doc) if doc else None


class PartnerDirectory:
    def __init__(self, database: Database):
        self.collection = database["partner"]

    def get(self, partner_id: Optional[str]) -> Optional[PartnerRef]:
        oid = _object_id(partner_id) if partner_id else None
        if oid is None:
            return None
        doc = self.collection.find_one({"_id": oid})
        return _partner(doc) if doc else None

    def find_for_user(self, identity: Identity) -> Optional[PartnerRef]:
        """Partner record of a logged-in partner account."""
        doc = self.collection.find_one({"user": identity.id})
        if doc is None and identity.email:
            doc = self.collection.find_one({"email": identity.email.lower()})
        return _partner(doc) if doc else None

    def find_by_contact(self, email: Optional[str] = None, phone: Optional[str] = None) -> Optional[PartnerRef]:
        doc = None
        if email:
            doc = self.collection.find_one(
                {"email": email.lower(), "status": {"$in": list(ACTIVE_PARTNER_STATUSES)}}
            )
        if doc is None and phone:
            doc = self.collection.find_one(
                {"phone": {"$in": [phone, _digits(phone)]}, "status": {"$in": list(ACTIVE_PARTNER_STATUSES)}}
            )
        return _partner(doc) if doc else None

    def record_redemption(self, partner_id: str, amount: float) -> None:
        oid = _object_id(partner_id)
        if oid is None:
            return
        self.collection.update_one(
            {"_id": oid},
            {"$inc": {"analytics.total_redemptions": 1, "analytics.total_revenue": amount}},
        )
