"""
Vendor wallet ledger

A wallet keeps an append-only transaction log plus cached running totals.
`add_transaction` is the only function that moves the totals; everything else
(top-ups, settlements, coupon intake and redemption) goes through it, and
`project_totals` can rebuild the totals from the log alone.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, serialize_document, to_object_id
from errors import ConflictError, CouponNotPendingError, InsufficientBalanceError, NotFoundError, ValidationError
from schemas import LastSettlement, Wallet, WalletCouponEntry, WalletTransaction, utcnow

logger = logging.getLogger(__name__)

CREDIT_TYPES = ("topup", "coupon_received")


@dataclass
class LedgerTotals:
    current_balance: float = 0.0
    total_received: float = 0.0
    total_redeemed: float = 0.0
    total_settled: float = 0.0

    def apply(self, tx: WalletTransaction) -> None:
        amount = tx.amount
        if tx.type in CREDIT_TYPES:
            self.current_balance = round(self.current_balance + amount, 2)
            self.total_received = round(self.total_received + amount, 2)
        elif tx.type == "coupon_redeemed":
            self.total_redeemed = round(self.total_redeemed + amount, 2)
            if not tx.balance_neutral:
                self.current_balance = round(self.current_balance - amount, 2)
        elif tx.type == "settlement":
            self.total_settled = round(self.total_settled + amount, 2)
            self.current_balance = round(self.current_balance - amount, 2)
        # adjustments are recorded without moving the totals

    @classmethod
    def of(cls, wallet: Wallet) -> "LedgerTotals":
        return cls(
            current_balance=wallet.current_balance,
            total_received=wallet.total_received,
            total_redeemed=wallet.total_redeemed,
            total_settled=wallet.total_settled,
        )

    def write_to(self, wallet: Wallet) -> None:
        wallet.current_balance = self.current_balance
        wallet.total_received = self.total_received
        wallet.total_redeemed = self.total_redeemed
        wallet.total_settled = self.total_settled


def project_totals(transactions: List[WalletTransaction]) -> LedgerTotals:
    totals = LedgerTotals()
    for tx in transactions:
        if tx.status == "completed":
            totals.apply(tx)
    return totals


def reconcile(wallet: Wallet) -> bool:
    """Reset cached totals to the log's projection. Returns True if they had drifted."""
    projected = project_totals(wallet.transactions)
    if projected == LedgerTotals.of(wallet):
        return False
    logger.warning(
        "Wallet %s totals drifted from its ledger (cached balance %.2f, ledger %.2f); using ledger",
        wallet.vendor,
        wallet.current_balance,
        projected.current_balance,
    )
    projected.write_to(wallet)
    return True


def add_transaction(wallet: Wallet, tx: WalletTransaction) -> WalletTransaction:
    wallet.transactions.append(tx)
    if tx.status == "completed":
        totals = LedgerTotals.of(wallet)
        totals.apply(tx)
        totals.write_to(wallet)
    logger.info("Wallet %s: %s %.2f (%s)", wallet.vendor, tx.type, tx.amount, tx.description)
    return tx


def find_coupon_entry(wallet: Wallet, coupon_id: str, status: Optional[str] = None) -> Optional[WalletCouponEntry]:
    for entry in wallet.coupons:
        if entry.coupon == coupon_id and (status is None or entry.status == status):
            return entry
    return None


def add_coupon(wallet: Wallet, coupon_id: str, amount: float = 0) -> Optional[WalletCouponEntry]:
    """Track a coupon as pending in this wallet. Does not move the balance.

    Returns None when the coupon is already tracked here.
    """
    if find_coupon_entry(wallet, coupon_id) is not None:
        return None
    entry = WalletCouponEntry(coupon=coupon_id, redeemed_amount=amount)
    wallet.coupons.append(entry)
    return entry


def redeem_coupon(
    wallet: Wallet,
    coupon_id: str,
    amount: float,
    processed_by: Optional[str] = None,
    description: str = "",
) -> WalletTransaction:
    """Mark a pending coupon redeemed and book the `coupon_redeemed` entry.

    `total_redeemed` always grows by `amount`. The balance only shrinks when the
    coupon was credited at intake (intake value > 0); percentage coupons came in
    at 0 and are paid out through a later settlement instead.
    """
    entry = find_coupon_entry(wallet, coupon_id, status="pending")
    if entry is None:
        raise CouponNotPendingError()

    credited_at_intake = (entry.redeemed_amount or 0) > 0
    entry.redeemed_at = utcnow()
    entry.redeemed_amount = amount
    entry.status = "redeemed"

    return add_transaction(
        wallet,
        WalletTransaction(
            type="coupon_redeemed",
            amount=amount,
            coupon=coupon_id,
            description=description,
            processed_by=processed_by,
            balance_neutral=not credited_at_intake,
        ),
    )


def topup(wallet: Wallet, amount: float, processed_by: Optional[str], description: Optional[str] = None) -> WalletTransaction:
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return add_transaction(
        wallet,
        WalletTransaction(type="topup", amount=amount, description=description or "Admin top-up", processed_by=processed_by),
    )


def settle(wallet: Wallet, amount: float, processed_by: Optional[str], transaction_id: Optional[str] = None) -> WalletTransaction:
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount > wallet.current_balance:
        raise InsufficientBalanceError()
    tx = add_transaction(
        wallet,
        WalletTransaction(
            type="settlement",
            amount=amount,
            transaction_id=transaction_id,
            description="Payment settlement",
            processed_by=processed_by,
        ),
    )
    wallet.last_settlement = LastSettlement(date=tx.processed_at, amount=amount, transaction_id=transaction_id)
    return tx


# ---------------------- Repository ----------------------
class WalletRepository:
    collection_name = "wallet"

    def __init__(self, database: Database):
        self.database = database
        self.collection = database[self.collection_name]

    @staticmethod
    def _load(doc: Optional[dict]) -> Optional[Wallet]:
        if doc is None:
            return None
        wallet = Wallet.model_validate(serialize_document(doc))
        reconcile(wallet)
        return wallet

    def find_by_vendor(self, vendor: str) -> Optional[Wallet]:
        return self._load(self.collection.find_one({"vendor": vendor}))

    def get_by_vendor(self, vendor: str) -> Wallet:
        wallet = self.find_by_vendor(vendor)
        if wallet is None:
            raise NotFoundError("Wallet not found")
        return wallet

    def create(self, vendor: str, vendor_type: str = "other") -> Wallet:
        wallet = Wallet(vendor=vendor, vendor_type=vendor_type)
        try:
            wallet.id = create_document(self.collection_name, wallet, self.database)
        except DuplicateKeyError:
            raise ConflictError("Wallet already exists for this vendor")
        logger.info("Created wallet for vendor %s (%s)", vendor, vendor_type)
        return wallet

    def get_or_create(self, vendor: str, vendor_type: str = "other") -> Wallet:
        wallet = self.find_by_vendor(vendor)
        if wallet is not None:
            return wallet
        try:
            return self.create(vendor, vendor_type)
        except ConflictError:
            # created by a concurrent request in between
            return self.get_by_vendor(vendor)

    def save(self, wallet: Wallet) -> Wallet:
        current_version = wallet.version
        wallet.version = current_version + 1
        wallet.updated_at = utcnow()
        result = self.collection.replace_one(
            {"_id": to_object_id(wallet.id, "wallet id"), "version": current_version},
            wallet.to_mongo(),
        )
        if result.matched_count == 0:
            wallet.version = current_version
            raise ConflictError("Wallet was modified by another request, please retry")
        return wallet

    def find(self, query: dict) -> List[Wallet]:
        return [self._load(doc) for doc in self.collection.find(query).sort([("created_at", DESCENDING)])]
