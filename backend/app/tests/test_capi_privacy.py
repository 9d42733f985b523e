"""Unit tests for PII normalization, hashing and privacy filtering.

WHAT:
    Verifies Meta's normalization rules, storage-time hashing and the
    privacy-mode allow-lists.

WHY:
    A normalization drift silently breaks Meta's identity matching, and an
    allow-list bug leaks fields a tenant did not consent to send.

REFERENCES:
    - app/services/capi_privacy.py (module under test)
"""

import hashlib

import pytest

from app.deps import DEFAULT_PRIVACY_MODE_FIELDS
from app.services.capi_privacy import (
    BLOCKED_FIELDS,
    calculate_match_score,
    filter_user_data,
    hash_field,
    hash_user_data_for_storage,
    match_quality_label,
    normalize_field,
    resolve_allowed_fields,
)


def _sha(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class TestNormalization:
    """Field-specific normalization before hashing."""

    def test_email_is_trimmed_and_lowercased(self):
        assert normalize_field("email", "  Donor@Example.COM ") == "donor@example.com"

    def test_phone_keeps_digits_only(self):
        assert normalize_field("phone", "+1 (555) 123-4567") == "15551234567"

    def test_short_phone_is_omitted(self):
        """WHAT: Fewer than 10 digits yields no value.
        WHY: Partial numbers produce hashes that can never match.
        """
        assert normalize_field("phone", "555-1234") is None
        assert hash_field("phone", "555-1234") is None

    @pytest.mark.parametrize("kind", ["first_name", "last_name", "city", "state"])
    def test_letter_fields_strip_non_letters(self, kind):
        assert normalize_field(kind, "  O'Neil-Smith 2nd ") == "oneilsmithnd"

    def test_zip_takes_first_five_digits(self):
        assert normalize_field("zip", "10001-1234") == "10001"

    def test_country_defaults_when_absent(self):
        assert normalize_field("country", None) == "us"
        assert normalize_field("country", "  ") == "us"
        assert normalize_field("country", " CA ") == "ca"

    def test_unknown_kind_raises(self):
        with pytest.raises(ValueError):
            normalize_field("employer", "Acme")

    def test_hash_is_deterministic_across_formatting(self):
        """WHAT: The same person formatted differently hashes identically.
        WHY: Meta matches events for one person across transactions.
        """
        assert hash_field("email", "Donor@Example.com") == hash_field("email", " donor@example.com")
        assert hash_field("email", "donor@example.com") == _sha("donor@example.com")


class TestStorageHashing:
    """Hashing at ingestion time into Meta keys."""

    def test_full_identity_maps_to_meta_keys(self):
        hashed = hash_user_data_for_storage({
            "email": "a@b.com",
            "phone": "5551234567",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "city": "New York",
            "state": "NY",
            "zip": "10001",
        })

        assert set(hashed) == {"em", "ph", "fn", "ln", "ct", "st", "zp", "country"}
        assert hashed["ct"] == _sha("newyork")
        assert hashed["country"] == _sha("us")

    def test_no_plaintext_is_stored(self):
        hashed = hash_user_data_for_storage({"email": "a@b.com"})
        assert "a@b.com" not in hashed.values()
        assert all(len(value) == 64 for value in hashed.values())

    def test_empty_identity_stores_nothing(self):
        assert hash_user_data_for_storage({}) == {}


class TestPrivacyFiltering:
    """Allow-list resolution and filtering of stored digests."""

    @pytest.fixture
    def full_hashed(self):
        hashed = hash_user_data_for_storage({
            "email": "a@b.com",
            "phone": "5551234567",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "city": "London",
            "state": "LDN",
            "zip": "12345",
        })
        hashed["client_ip_address"] = "203.0.113.9"
        hashed["client_user_agent"] = "Mozilla/5.0"
        return hashed

    def test_conservative_is_strict_subset_of_standard(self, full_hashed):
        """WHAT: Conservative output fields are a strict subset of standard's.
        WHY: Conservative tenants must never send more than standard ones.
        """
        extras = {"external_id": "ext-1", "fbp": "fb.1.1.1", "fbc": "fb.1.1.abc"}
        conservative = filter_user_data(
            full_hashed, resolve_allowed_fields("conservative", DEFAULT_PRIVACY_MODE_FIELDS), extras,
        )
        standard = filter_user_data(
            full_hashed, resolve_allowed_fields("standard", DEFAULT_PRIVACY_MODE_FIELDS), extras,
        )

        assert set(conservative) < set(standard)
        assert "fn" not in conservative
        assert "fn" in standard

    def test_output_never_exceeds_allow_list(self, full_hashed):
        allowed = {"em", "zp"}
        result = filter_user_data(full_hashed, allowed, {"fbp": "fb.1.1.1"})
        assert set(result) == {"em", "zp"}

    def test_digests_are_passed_through_unchanged(self, full_hashed):
        result = filter_user_data(full_hashed, {"em"})
        assert result["em"] == full_hashed["em"]

    def test_aggressive_includes_ip_and_user_agent(self, full_hashed):
        allowed = resolve_allowed_fields("aggressive", DEFAULT_PRIVACY_MODE_FIELDS)
        result = filter_user_data(full_hashed, allowed)
        assert result["client_ip_address"] == "203.0.113.9"
        assert result["client_user_agent"] == "Mozilla/5.0"

    def test_tenant_override_replaces_mode_list(self):
        allowed = resolve_allowed_fields("standard", DEFAULT_PRIVACY_MODE_FIELDS, ["em"])
        assert allowed == frozenset({"em"})

    def test_allow_list_comes_from_configuration(self):
        configured = {"conservative": ["ph"], "standard": ["ph", "em"]}
        assert resolve_allowed_fields("conservative", configured) == frozenset({"ph"})

    def test_unknown_mode_uses_most_restrictive_list(self):
        configured = {"conservative": ["ph"], "standard": ["ph", "em"]}
        assert resolve_allowed_fields("balanced", configured) == frozenset({"ph"})

    def test_blocked_fields_are_never_allowed(self):
        allowed = resolve_allowed_fields("standard", DEFAULT_PRIVACY_MODE_FIELDS, ["em", "employer", "addr1"])
        assert allowed == frozenset({"em"})
        assert not (allowed & BLOCKED_FIELDS)


class TestMatchScore:
    """Diagnostic match score and quality label."""

    def test_score_without_email_or_phone_is_capped(self):
        hashed = hash_user_data_for_storage({"first_name": "Ada", "last_name": "L", "zip": "12345"})
        extras = {"external_id": "x", "fbp": "fb.1", "fbc": "fb.2"}
        score = calculate_match_score(hashed, extras)
        assert score <= 40
        assert match_quality_label(score, hashed) in {"fair", "poor"}

    def test_full_identity_scores_excellent(self):
        hashed = hash_user_data_for_storage({
            "email": "a@b.com", "phone": "5551234567", "first_name": "A", "last_name": "B",
            "city": "C", "state": "D", "zip": "12345",
        })
        hashed["client_ip_address"] = "203.0.113.9"
        hashed["client_user_agent"] = "UA"
        extras = {"external_id": "x", "fbp": "fb.1", "fbc": "fb.2"}
        score = calculate_match_score(hashed, extras)
        assert score == 100
        assert match_quality_label(score, hashed) == "excellent"

    @pytest.mark.parametrize("score,label", [(81, "excellent"), (61, "very_good"), (41, "good"), (21, "fair"), (5, "poor")])
    def test_labels(self, score, label):
        assert match_quality_label(score) == label
