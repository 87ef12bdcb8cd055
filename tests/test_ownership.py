"""
Unit tests for ownership resolution.

Tests share normalisation, artist name fingerprints and media registration.
"""

import logging
from decimal import Decimal
from fractions import Fraction

import pytest

from tip_escrow.core.errors import InvalidOwnership
from tip_escrow.core.ownership import OwnershipResolver, normalize_shares, to_fraction
from tip_escrow.storage.models import (
    UNKNOWN_ARTIST_NAME,
    UnverifiedArtist,
    VerifiedArtist,
    fingerprint_artist_name,
)
from tip_escrow.storage.repository import LedgerRepository

ALICE = VerifiedArtist("alice")
BOB = VerifiedArtist("bob")


class TestFingerprint:
    """Test artist name fingerprints."""

    def test_case_and_whitespace_insensitive(self):
        assert fingerprint_artist_name("  The   Beatles ") == "the beatles"

    def test_punctuation_insensitive(self):
        assert fingerprint_artist_name("AC/DC!") == fingerprint_artist_name("acdc")

    def test_unicode_normalised(self):
        assert fingerprint_artist_name("Ｂｊöｒｋ") == fingerprint_artist_name("björk")

    def test_empty_name_uses_unknown_artist(self):
        owner = UnverifiedArtist.from_name("   ")
        assert owner.display_name == UNKNOWN_ARTIST_NAME
        assert owner.fingerprint == "unknown artist"

    def test_verified_artist_requires_id(self):
        with pytest.raises(ValueError):
            VerifiedArtist("  ")


class TestNormalizeShares:
    """Test exact share normalisation."""

    def test_exact_shares_unchanged(self):
        shares = normalize_shares([(ALICE, Fraction(3, 5)), (BOB, Fraction(2, 5))])
        assert shares == [(ALICE, Fraction(3, 5)), (BOB, Fraction(2, 5))]

    def test_decimal_and_string_inputs(self):
        shares = normalize_shares([(ALICE, Decimal("0.6")), (BOB, "2/5")])
        assert shares == [(ALICE, Fraction(3, 5)), (BOB, Fraction(2, 5))]

    def test_duplicate_owners_merged(self):
        shares = normalize_shares([(ALICE, "0.25"), (BOB, "0.5"), (ALICE, "0.25")])
        assert shares == [(ALICE, Fraction(1, 2)), (BOB, Fraction(1, 2))]

    def test_zero_shares_dropped(self):
        shares = normalize_shares([(ALICE, 1), (BOB, 0)])
        assert shares == [(ALICE, Fraction(1))]

    def test_near_one_rescaled_silently(self, caplog):
        with caplog.at_level(logging.WARNING):
            shares = normalize_shares([(ALICE, "0.33333"), (BOB, "0.66666")], tolerance=Decimal("0.0001"))
        assert sum(share for _, share in shares) == 1
        assert caplog.records == []

    def test_far_from_one_rescaled_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            shares = normalize_shares([(ALICE, 1), (BOB, 1)], media_id="media-1")
        assert shares == [(ALICE, Fraction(1, 2)), (BOB, Fraction(1, 2))]
        assert "media-1" in caplog.text

    def test_negative_share_rejected(self):
        with pytest.raises(InvalidOwnership, match="Negative"):
            normalize_shares([(ALICE, "1.5"), (BOB, "-0.5")])

    def test_all_zero_rejected(self):
        with pytest.raises(InvalidOwnership, match="zero"):
            normalize_shares([(ALICE, 0), (BOB, 0)])

    def test_no_owners_is_unresolved(self):
        assert normalize_shares([]) == []

    def test_float_share_rejected(self):
        with pytest.raises(InvalidOwnership, match="exact"):
            to_fraction(0.5)


class TestOwnershipResolver:
    """Test resolution against stored ownership."""

    @pytest.fixture(autouse=True)
    def _resolver(self, db_path):
        self.repo = LedgerRepository(db_path)
        self.repo.initialize()
        self.resolver = OwnershipResolver(self.repo)

    def test_register_and_resolve(self):
        self.resolver.register_media(
            "media-1", "Alice & Bob", [(ALICE, "0.6"), (BOB, "0.4")], title="Duet"
        )

        resolved = self.resolver.resolve("media-1")

        assert not resolved.unresolved
        assert resolved.media.title == "Duet"
        assert resolved.shares == [(ALICE, Fraction(3, 5)), (BOB, Fraction(2, 5))]

    def test_unknown_media_is_unresolved(self):
        resolved = self.resolver.resolve("missing")

        assert resolved.unresolved
        assert resolved.unresolved_owner.display_name == UNKNOWN_ARTIST_NAME

    def test_media_without_owners_pools_under_artist_name(self):
        self.resolver.register_media("media-2", "New Band", [], channel_id="chan-7")

        resolved = self.resolver.resolve("media-2")

        assert resolved.unresolved
        assert resolved.unresolved_owner == UnverifiedArtist("new band", "New Band", "chan-7")

    def test_register_requires_media_id(self):
        with pytest.raises(ValueError, match="media_id"):
            self.resolver.register_media("", "Someone", [(ALICE, 1)])
