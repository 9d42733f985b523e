"""PII normalization, hashing and privacy-mode field selection for Meta CAPI.

WHAT:
    - Normalizes identity fields the way Meta expects and SHA-256 hashes them.
    - Filters stored, already-hashed user data down to what a tenant's
      privacy mode allows.

WHY:
    Hashing happens once, when the conversion is ingested into the outbox.
    The delivery path only filters and reuses stored digests, so plaintext
    PII never sits in the outbox table and retries send identical values.

    Normalization must be deterministic: the same person hashed from two
    separate transactions has to yield the same digest, otherwise Meta's
    identity matching fails.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/customer-information-parameters
    - app/services/capi_event_builder.py (consumer of filter_user_data)
"""

import hashlib
import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "us"
MIN_PHONE_DIGITS = 10

# Field kind -> Meta user_data key
FIELD_KEYS: Dict[str, str] = {
    "email": "em",
    "phone": "ph",
    "first_name": "fn",
    "last_name": "ln",
    "city": "ct",
    "state": "st",
    "zip": "zp",
    "country": "country",
}

HASHED_KEYS = frozenset(FIELD_KEYS.values())

# Correlation tokens supplied out-of-band; never hashed.
EXTRA_KEYS = ("external_id", "fbp", "fbc", "client_ip_address", "client_user_agent")

# Never sent regardless of privacy mode or tenant override.
BLOCKED_FIELDS = frozenset({"employer", "occupation", "addr1", "address", "street"})

_NON_DIGITS = re.compile(r"\D")
_NON_LETTERS = re.compile(r"[^a-z]")


def _normalize_email(value: str) -> Optional[str]:
    normalized = value.strip().lower()
    return normalized or None


def _normalize_phone(value: str) -> Optional[str]:
    digits = _NON_DIGITS.sub("", value)
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return digits


def _normalize_letters(value: str) -> Optional[str]:
    normalized = _NON_LETTERS.sub("", value.strip().lower())
    return normalized or None


def _normalize_zip(value: str) -> Optional[str]:
    digits = _NON_DIGITS.sub("", value)[:5]
    return digits or None


def _normalize_country(value: str) -> Optional[str]:
    return value.strip().lower() or None


_NORMALIZERS = {
    "email": _normalize_email,
    "phone": _normalize_phone,
    "first_name": _normalize_letters,
    "last_name": _normalize_letters,
    "city": _normalize_letters,
    "state": _normalize_letters,
    "zip": _normalize_zip,
    "country": _normalize_country,
}


def sha256_hex(value: str) -> str:
    """Lowercase hex SHA-256 digest of a UTF-8 string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_field(kind: str, value: Any) -> Optional[str]:
    """Normalize a raw identity value for the given field kind.

    Returns None when the value is absent or does not survive normalization
    (e.g. a phone number with fewer than 10 digits). Country falls back to
    DEFAULT_COUNTRY when absent.

    Raises:
        ValueError: Unknown field kind.
    """
    normalizer = _NORMALIZERS.get(kind)
    if normalizer is None:
        raise ValueError(f"Unknown identity field kind: {kind}")

    if value is None or (isinstance(value, str) and not value.strip()):
        return DEFAULT_COUNTRY if kind == "country" else None

    return normalizer(str(value))


def hash_field(kind: str, value: Any) -> Optional[str]:
    """Normalize then hash a raw identity value; None if it normalizes away."""
    normalized = normalize_field(kind, value)
    if normalized is None:
        return None
    return sha256_hex(normalized)


def hash_user_data_for_storage(raw: Mapping[str, Any]) -> Dict[str, str]:
    """Hash raw identity fields into Meta user_data keys for outbox storage.

    Args:
        raw: Mapping keyed by field kind (email, phone, first_name, ...).

    Returns:
        Dict keyed by Meta keys (em, ph, fn, ...) holding digests. Fields that
        are missing or fail normalization are omitted, except country which
        defaults to DEFAULT_COUNTRY once any other field is present.
    """
    hashed: Dict[str, str] = {}
    for kind, key in FIELD_KEYS.items():
        if kind == "country":
            continue
        digest = hash_field(kind, raw.get(kind))
        if digest:
            hashed[key] = digest

    if hashed:
        hashed["country"] = hash_field("country", raw.get("country"))

    return hashed


def resolve_allowed_fields(
    privacy_mode: Optional[str],
    mode_fields: Mapping[str, Iterable[str]],
    overrides: Optional[Iterable[str]] = None,
) -> frozenset:
    """Resolve the user_data allow-list for a tenant.

    Args:
        privacy_mode: Tenant's privacy mode.
        mode_fields: Configured allow-list per mode (Settings.CAPI_PRIVACY_MODE_FIELDS).
        overrides: Tenant-specific allow-list; replaces the mode list when set.

    Unknown modes fall back to the smallest configured list so a typo in a
    tenant row can only ever reduce what is sent.
    """
    if overrides is not None:
        allowed = frozenset(overrides)
    elif privacy_mode in mode_fields:
        allowed = frozenset(mode_fields[privacy_mode])
    else:
        if not mode_fields:
            return frozenset()
        allowed = min((frozenset(fields) for fields in mode_fields.values()), key=len)
        logger.warning("[CAPI_PRIVACY] Unknown privacy mode %r, using most restrictive list", privacy_mode)

    return allowed - BLOCKED_FIELDS


def filter_user_data(
    hashed: Mapping[str, Any],
    allowed: Iterable[str],
    extras: Optional[Mapping[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    """Select stored digests and correlation tokens permitted by the allow-list.

    No hashing happens here. Keys not in the allow-list, blocked keys and
    empty values are dropped. Correlation tokens come from `extras` first,
    then from the stored map (IP and user agent are stored there unhashed).
    """
    allowed = frozenset(allowed) - BLOCKED_FIELDS
    extras = extras or {}
    user_data: Dict[str, Any] = {}

    for key in HASHED_KEYS:
        value = hashed.get(key)
        if key in allowed and value:
            user_data[key] = value

    for key in EXTRA_KEYS:
        value = extras.get(key) or hashed.get(key)
        if key in allowed and value:
            user_data[key] = value

    return user_data


# Match score weights, following Meta's Event Match Quality guidance.
MATCH_SCORE_WEIGHTS: Dict[str, int] = {
    "em": 30,
    "ph": 25,
    "external_id": 15,
    "fbp": 10,
    "fbc": 10,
    "fn": 3,
    "ln": 3,
    "ct": 2,
    "st": 2,
    "zp": 5,
    "country": 2,
    "client_ip_address": 3,
    "client_user_agent": 2,
}

# Without email or phone Meta cannot reliably match.
MATCH_SCORE_CAP_NO_PRIMARY_ID = 40


def calculate_match_score(
    hashed: Mapping[str, Any],
    extras: Optional[Mapping[str, Optional[str]]] = None,
) -> int:
    """Score 0-100 from the presence of identity fields (diagnostics only).

    Weights follow Meta's Event Match Quality guidance: email and phone
    dominate, browser tokens and external_id matter, location only a little.
    """
    extras = extras or {}
    max_possible = sum(MATCH_SCORE_WEIGHTS.values())
    score = sum(
        weight for key, weight in MATCH_SCORE_WEIGHTS.items()
        if hashed.get(key) or extras.get(key)
    )
    normalized = round(score / max_possible * 100)

    if not hashed.get("em") and not hashed.get("ph"):
        normalized = min(normalized, MATCH_SCORE_CAP_NO_PRIMARY_ID)
    return normalized


def match_quality_label(score: int, hashed: Optional[Mapping[str, Any]] = None) -> str:
    """Human-readable label for a match score."""
    if hashed is not None and not hashed.get("em") and not hashed.get("ph"):
        return "fair" if score >= 21 else "poor"

    if score >= 81:
        return "excellent"
    if score >= 61:
        return "very_good"
    if score >= 41:
        return "good"
    if score >= 21:
        return "fair"
    return "poor"
