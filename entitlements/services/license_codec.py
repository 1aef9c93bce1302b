"""
License code and forex key codec.

License codes look like ``PRO-4X7K-9Q2M-HJ3W-ZP8N-123``: a tier prefix,
four segments drawn from an alphabet without I, O, 0 and 1, and a three
digit checksum. Forex keys look like ``FX-MO-1A2B3C4D-LZ0X9K-7QF2`` and are
only checked for shape. The two schemes are never cross-validated.
"""

import re
import secrets
from datetime import datetime
from typing import Dict, Optional

from entitlements.common.exceptions import ChecksumMismatchError, CredentialFormatError
from entitlements.models.license import CodeValidation, Credential, CredentialKind, ForexPlanType
from entitlements.models.subscription import BillingCycle, PlanTier
from entitlements.utils.logging import get_logger
from entitlements.utils.time_utils import ensure_utc, utc_now

logger = get_logger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SEGMENT_LENGTH = 4
SEGMENT_COUNT = 4

TIER_PREFIXES: Dict[PlanTier, str] = {
    PlanTier.FREE: "FRE",
    PlanTier.STARTER: "STR",
    PlanTier.PRO: "PRO",
    PlanTier.ELITE: "ELT",
    PlanTier.DESKTOP: "DSK",
}
PREFIX_TIERS: Dict[str, PlanTier] = {prefix: tier for tier, prefix in TIER_PREFIXES.items()}

LICENSE_CODE_PATTERN = re.compile(
    r"^(FRE|STR|PRO|ELT|DSK)-([A-HJ-NP-Z2-9]{4})-([A-HJ-NP-Z2-9]{4})"
    r"-([A-HJ-NP-Z2-9]{4})-([A-HJ-NP-Z2-9]{4})-(\d{3})$"
)

FOREX_KEY_PATTERN = re.compile(r"^FX-(LT|MO)-[A-Z0-9]{8}-[A-Z0-9]{6}-[A-Z0-9]{4}$")
FOREX_PLAN_PREFIXES: Dict[ForexPlanType, str] = {
    ForexPlanType.LIFETIME: "LT",
    ForexPlanType.MONTHLY: "MO",
}
BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

INVALID_FORMAT = "Invalid license code format"
INVALID_CHECKSUM = "Invalid license code checksum"
INVALID_FOREX_KEY = "Invalid license key format"


def compute_checksum(body: str) -> str:
    """Sum of character codes of ``body`` without dashes, mod 1000."""
    total = sum(ord(char) for char in body.replace("-", ""))
    return f"{total % 1000:03d}"


def _random_segment(length: int = SEGMENT_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_license_code(plan_tier: PlanTier, billing_cycle: BillingCycle = BillingCycle.MONTHLY) -> str:
    """Mint a license code for ``plan_tier``.

    The billing cycle is not encoded in the code; it is stored alongside the
    issued record.
    """
    prefix = TIER_PREFIXES[PlanTier(plan_tier)]
    body = "-".join([prefix] + [_random_segment() for _ in range(SEGMENT_COUNT)])
    return f"{body}-{compute_checksum(body)}"


def validate_license_code(code: str) -> CodeValidation:
    """Check a license code's grammar and checksum without touching storage."""
    if not isinstance(code, str):
        return CodeValidation(valid=False, error=INVALID_FORMAT)

    normalized = code.strip().upper()
    match = LICENSE_CODE_PATTERN.match(normalized)
    if not match:
        return CodeValidation(valid=False, error=INVALID_FORMAT)

    prefix, *segments, checksum = match.groups()
    body = "-".join([prefix] + segments)
    if checksum != compute_checksum(body):
        return CodeValidation(valid=False, error=INVALID_CHECKSUM)

    return CodeValidation(valid=True, plan_tier=PREFIX_TIERS[prefix], code=normalized)


def parse_license_code(code: str) -> CodeValidation:
    """Like :func:`validate_license_code` but raises on invalid input."""
    result = validate_license_code(code)
    if result.valid:
        return result
    if result.error == INVALID_CHECKSUM:
        raise ChecksumMismatchError(credential=code)
    raise CredentialFormatError(INVALID_FORMAT, credential=code)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def _user_fragment(user_id: str) -> str:
    fragment = "".join(char for char in str(user_id).upper() if char.isascii() and char.isalnum())[:8]
    # Short or non-alphanumeric ids are padded so the key keeps its shape
    while len(fragment) < 8:
        fragment += secrets.choice(BASE36_ALPHABET)
    return fragment


def generate_forex_license_key(
    user_id: str,
    plan_type: ForexPlanType,
    now: Optional[datetime] = None
) -> str:
    """Mint ``FX-<LT|MO>-<user8>-<time6>-<rand4>``."""
    issued_at = ensure_utc(now or utc_now())
    millis = int(issued_at.timestamp() * 1000)
    time_fragment = _to_base36(millis)[:6].rjust(6, "0")
    random_fragment = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(4))
    prefix = FOREX_PLAN_PREFIXES[ForexPlanType(plan_type)]
    return f"FX-{prefix}-{_user_fragment(user_id)}-{time_fragment}-{random_fragment}"


def is_valid_forex_key_format(license_key: str) -> bool:
    if not isinstance(license_key, str):
        return False
    return FOREX_KEY_PATTERN.match(license_key.strip().upper()) is not None


def normalize_forex_key(license_key: str) -> str:
    """Canonical uppercase key, or :class:`CredentialFormatError`."""
    if not is_valid_forex_key_format(license_key):
        raise CredentialFormatError(INVALID_FOREX_KEY, credential=license_key)
    return license_key.strip().upper()


def identify_credential(raw: str) -> Optional[Credential]:
    """Tag ``raw`` by the scheme its shape matches, without validating it."""
    if not isinstance(raw, str):
        return None
    normalized = raw.strip().upper()
    if FOREX_KEY_PATTERN.match(normalized):
        return Credential(kind=CredentialKind.FOREX_KEY, value=normalized)
    if LICENSE_CODE_PATTERN.match(normalized):
        return Credential(kind=CredentialKind.LICENSE_CODE, value=normalized)
    return None
