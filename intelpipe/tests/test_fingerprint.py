"""Fingerprint and SimHash tests"""

import pytest

from intelpipe.core.fingerprint import (
    canonical_text,
    content_fingerprint,
    hamming_distance,
    normalize_text,
    signature_from_hex,
    signature_to_hex,
    simhash,
)
from intelpipe.schemas.items import CollectedItem
from intelpipe.tests.conftest import REPORT, REPORT_EDITED, UNRELATED


class TestNormalization:
    """Test text normalisation and exact fingerprints"""

    def test_normalize_text(self):
        """Test case, punctuation and whitespace are folded"""
        assert normalize_text("  Hello,   World!\n") == "hello world"
        assert normalize_text("") == ""

    def test_fingerprint_ignores_formatting(self):
        """Test cosmetic differences give the same fingerprint"""
        assert content_fingerprint("Acme Corp  raises funding!") == content_fingerprint("acme corp raises funding")
        assert content_fingerprint("Acme Corp raises funding") != content_fingerprint("Acme Corp loses funding")

    def test_canonical_text_structured(self):
        """Test structured payloads concatenate their text fields in order"""
        content = {"summary": "body text", "title": "Headline", "link": "https://example.org"}
        assert canonical_text(content, "structured") == "Headline body text"

    def test_canonical_text_binary_reference_uses_metadata(self):
        """Test binary references take their text from metadata"""
        assert canonical_text({"sha256": "ab"}, "binary_reference", {"title": "sample.pdf"}) == "sample.pdf"

    def test_item_identity_is_stable(self):
        """Test the same source, key and content always give the same id"""
        first = CollectedItem.create("feed-a", "entry-1", {"title": "Acme Corp raises funding"})
        second = CollectedItem.create("feed-a", "entry-1", {"title": "Acme Corp raises funding"})
        changed = CollectedItem.create("feed-a", "entry-1", {"title": "Acme Corp raises more funding"})

        assert first.id == second.id
        assert first.fingerprint == second.fingerprint
        assert changed.id != first.id


class TestSimHash:
    """Test near-duplicate signatures"""

    def test_known_signature(self):
        """Test signature of a fixed text"""
        assert signature_to_hex(simhash(REPORT)) == "6d0d6c2135bfc28b"

    def test_small_edit_is_close(self):
        """Test a one-word edit stays within the near-duplicate threshold"""
        assert hamming_distance(simhash(REPORT), simhash(REPORT_EDITED)) == 2

    def test_unrelated_text_is_far(self):
        """Test unrelated texts are far apart"""
        assert hamming_distance(simhash(REPORT), simhash(UNRELATED)) > 10

    def test_empty_text(self):
        """Test empty input gives a zero signature"""
        assert simhash("") == 0
        assert simhash("!!! ...") == 0

    def test_hex_roundtrip(self):
        """Test signatures survive the fixed-width hex column"""
        signature = simhash(UNRELATED)
        encoded = signature_to_hex(signature)
        assert len(encoded) == 16
        assert signature_from_hex(encoded) == signature

    def test_invalid_width(self):
        """Test unsupported signature widths are rejected"""
        with pytest.raises(ValueError):
            simhash(REPORT, bits=0)
