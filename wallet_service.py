import logging
from typing import List, Optional

from pymongo.database import Database

import wallets
from directory import Identity, PartnerDirectory, UserDirectory
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from schemas import Wallet, WalletTransaction

logger = logging.getLogger(__name__)


class WalletService:
    def __init__(self, database: Database):
        self.wallets = wallets.WalletRepository(database)
        self.users = UserDirectory(database)
        self.partners = PartnerDirectory(database)

    @staticmethod
    def _require_owner(identity: Identity, vendor_id: str, message: str) -> None:
        if not identity.is_admin and identity.id != vendor_id:
            raise ForbiddenError(message)

    def create(
        self,
        identity: Identity,
        vendor: Optional[str] = None,
        vendor_type: Optional[str] = None,
        partner_id: Optional[str] = None,
    ) -> Wallet:
        if partner_id and not vendor:
            partner = self.partners.get(partner_id)
            if partner is None:
                raise NotFoundError("Partner not found")
            vendor = partner.user
            if not vendor:
                account = self.users.find_vendor(partner.email, partner.phone)
                vendor = account.id if account else None
            if not vendor:
                raise NotFoundError("Partner has no linked user account")

        if not vendor:
            raise ValidationError("Vendor ID or Partner ID is required")
        if self.wallets.find_by_vendor(vendor) is not None:
            raise ConflictError("Wallet already exists for this vendor")
        if self.users.get(vendor) is None:
            raise NotFoundError("Vendor user not found")

        wallet = self.wallets.create(vendor, vendor_type or "other")
        logger.info("Wallet for vendor %s created by %s", vendor, identity.id)
        return wallet

    def list(self, vendor_type: Optional[str] = None, status: Optional[str] = None) -> List[Wallet]:
        query = {}
        if vendor_type:
            query["vendor_type"] = vendor_type
        if status:
            query["status"] = status
        return self.wallets.find(query)

    def get(self, identity: Identity, vendor_id: str) -> Wallet:
        self._require_owner(identity, vendor_id, "You do not have permission to view this wallet")
        wallet = self.wallets.find_by_vendor(vendor_id)
        if wallet is None:
            if self.users.get(vendor_id) is None:
                raise NotFoundError("Vendor not found")
            wallet = self.wallets.get_or_create(vendor_id)
        return wallet

    def transactions(self, identity: Identity, vendor_id: str) -> List[WalletTransaction]:
        self._require_owner(identity, vendor_id, "You do not have permission to view these transactions")
        wallet = self.wallets.get_by_vendor(vendor_id)
        return sorted(wallet.transactions, key=lambda tx: tx.processed_at, reverse=True)

    def topup(self, identity: Identity, vendor_id: str, amount: float, description: Optional[str] = None) -> Wallet:
        wallet = self.wallets.get_by_vendor(vendor_id)
        wallets.topup(wallet, amount, identity.id, description)
        return self.wallets.save(wallet)

    def settle(self, identity: Identity, vendor_id: str, amount: float, transaction_id: Optional[str] = None) -> Wallet:
        wallet = self.wallets.get_by_vendor(vendor_id)
        wallets.settle(wallet, amount, identity.id, transaction_id)
        return self.wallets.save(wallet)
