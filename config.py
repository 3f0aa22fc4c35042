import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

PERCENTAGE_POLICY_ALLOW_ZERO = "allow_zero"
PERCENTAGE_POLICY_REQUIRE_PURCHASE = "require_purchase_amount"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _list_env(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    default_currency: str = "INR"
    max_purchase_quantity: int = 50
    code_suffix_length: int = 6
    code_max_attempts: int = 10
    percentage_redemption_policy: str = PERCENTAGE_POLICY_ALLOW_ZERO
    redemption_timezone: str = "UTC"

    @classmethod
    def from_env(cls) -> "Settings":
        policy = os.getenv("PERCENTAGE_REDEMPTION_POLICY", PERCENTAGE_POLICY_ALLOW_ZERO)
        if policy not in (PERCENTAGE_POLICY_ALLOW_ZERO, PERCENTAGE_POLICY_REQUIRE_PURCHASE):
            raise RuntimeError(f"Unknown PERCENTAGE_REDEMPTION_POLICY: {policy!r}")

        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            port=_int_env("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=_list_env("CORS_ORIGINS", "*"),
            default_currency=os.getenv("DEFAULT_CURRENCY", "INR").upper(),
            max_purchase_quantity=max(1, _int_env("MAX_PURCHASE_QUANTITY", 50)),
            code_suffix_length=max(4, _int_env("COUPON_CODE_SUFFIX_LENGTH", 6)),
            code_max_attempts=max(1, _int_env("COUPON_CODE_MAX_ATTEMPTS", 10)),
            percentage_redemption_policy=policy,
            redemption_timezone=os.getenv("REDEMPTION_TIMEZONE", "UTC"),
        )


settings = Settings.from_env()
