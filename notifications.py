import logging
from typing import Dict, Optional

from coupons import describe_value
from schemas import Coupon

logger = logging.getLogger(__name__)

CHANNELS = ("email", "sms", "whatsapp")


def coupon_message(coupon: Coupon) -> str:
    valid_until = coupon.validity.end_date.strftime("%d %b %Y")
    return (
        f"You have received a coupon: {coupon.title} ({describe_value(coupon)}). "
        f"Code: {coupon.code}. Valid until {valid_until}."
    )


class NotificationDispatcher:
    """Delivers coupon messages per channel.

    This implementation only logs each message; a deployment wires in a
    subclass that talks to the real email / SMS / WhatsApp providers.
    """

    def send_coupon(self, coupon: Coupon, recipient: Optional[dict], methods: Dict[str, bool]) -> Dict[str, dict]:
        recipient = recipient or {}
        message = coupon_message(coupon)
        results: Dict[str, dict] = {}
        for channel in CHANNELS:
            if not methods.get(channel):
                continue
            address = recipient.get("email") if channel == "email" else recipient.get("phone")
            if not address:
                results[channel] = {"success": False, "error": f"No {channel} address for recipient"}
                continue
            try:
                results[channel] = self.deliver(channel, address, message)
            except Exception as exc:
                logger.error("Coupon %s: %s delivery to %s failed", coupon.code, channel, address, exc_info=True)
                results[channel] = {"success": False, "error": str(exc)}
        return results

    def deliver(self, channel: str, address: str, message: str) -> dict:
        logger.info("%s to %s: %s", channel, address, message)
        return {"success": True, "message": f"{channel} message queued"}
