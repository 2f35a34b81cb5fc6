"""Tests for claim/strength extraction and the small evidence helpers."""
from __future__ import annotations

import pytest

from arbitrage.evidence import (
    confidence_from_strength,
    derive_publisher,
    extract_citation_claims,
    infer_source_type,
    normalize_snippet,
)


class TestExtractCitationClaims:
    def test_strength_in_following_segment_applies_to_previous_citation(self):
        content = (
            "Adoption rose 40% [1]. Strength: 7/10\n"
            "Independent review confirmed savings [2]. Strength: 9/10"
        )
        result = extract_citation_claims(content, "Startup Visa")
        assert result.claim_by_citation == {
            1: "Adoption rose 40%.",
            2: "Independent review confirmed savings.",
        }
        assert result.strength_by_citation == {1: 7, 2: 9}

    def test_multiple_indices_share_claim(self):
        result = extract_citation_claims("Grants doubled between 2019 and 2022 [1, 3].", "x")
        assert result.claim_by_citation[1] == "Grants doubled between 2019 and 2022."
        assert result.claim_by_citation[3] == "Grants doubled between 2019 and 2022."
        assert 2 not in result.claim_by_citation

    def test_first_occurrence_wins(self):
        result = extract_citation_claims("First claim [1]. Second claim [1].", "x")
        assert result.claim_by_citation[1] == "First claim."

    def test_first_strength_wins(self):
        content = "Jobs created [1] Strength: 8/10\nMore jobs [1] Strength: 3/10"
        result = extract_citation_claims(content, "x")
        assert result.strength_by_citation[1] == 8

    def test_strength_clamped(self):
        result = extract_citation_claims("Exports grew [2] Evidence strength: 12/10\nFlat [3] strength: 0/10", "x")
        assert result.strength_by_citation[2] == 10
        assert result.strength_by_citation[3] == 1
        assert result.claim_by_citation[2] == "Exports grew"

    def test_strength_without_prior_citation_ignored(self):
        result = extract_citation_claims("Strength: 5/10\nSomething [1].", "x")
        assert result.strength_by_citation == {}
        assert result.claim_by_citation == {1: "Something."}

    def test_carried_strength_does_not_overwrite(self):
        content = "Uptake high [1] Strength: 6/10\nStrength: 2/10"
        result = extract_citation_claims(content, "x")
        assert result.strength_by_citation[1] == 6

    def test_no_citations_gives_fallback_only(self):
        result = extract_citation_claims("Nothing is cited here.", "x")
        assert result.claim_by_citation == {}
        assert result.strength_by_citation == {}
        assert result.fallback_claim == "Nothing is cited here."

    def test_fallback_prefers_segment_naming_policy(self):
        content = "General background first. The Startup Visa attracted founders. Other text."
        result = extract_citation_claims(content, "Startup Visa")
        assert result.fallback_claim == "The Startup Visa attracted founders."

    def test_marker_only_segment_is_skipped(self):
        content = "[1] Strength: 8/10\nReal claim [1]. Strength: 5/10\n[3]\nStrength: 4/10"
        result = extract_citation_claims(content, "x")
        assert result.claim_by_citation == {1: "Real claim."}
        assert result.strength_by_citation == {1: 5}

    def test_fallback_keeps_raw_segment(self):
        result = extract_citation_claims("Background. Startup Visa cut wait times [1]. Strength: 6/10", "Startup Visa")
        assert result.fallback_claim == "Startup Visa cut wait times [1]."

    @pytest.mark.parametrize("content", ["", "   \n\n  ", "[[[ ]]] ...", "Strength: /10 [x]"])
    def test_malformed_input_never_raises(self, content):
        result = extract_citation_claims(content, "Anything")
        assert isinstance(result.fallback_claim, str)


class TestHelpers:
    def test_derive_publisher_strips_www(self):
        assert derive_publisher("https://www.oecd.org/report") == "oecd.org"
        assert derive_publisher("https://news.example.com/a") == "news.example.com"

    def test_derive_publisher_invalid(self):
        assert derive_publisher("not a url") is None
        assert derive_publisher("") is None

    def test_normalize_snippet(self):
        assert normalize_snippet("a   b\n  c") == "a b c"
        assert normalize_snippet("   ") is None
        assert normalize_snippet(None) is None

    def test_normalize_snippet_truncates(self):
        snippet = normalize_snippet("x" * 400)
        assert len(snippet) == 280
        assert snippet.endswith("...")

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://www.oecd.org/innovation", "oecd_report"),
            ("https://www.gov.uk/guidance", "gov_doc"),
            ("https://enterprise.gov.ie/en/", "gov_doc"),
            ("https://web.mit.edu/paper", "academic"),
            ("https://www.irishtimes.com/business", "news"),
        ],
    )
    def test_infer_source_type(self, url, expected):
        assert infer_source_type(url) == expected

    def test_confidence_from_strength(self):
        assert confidence_from_strength(7) == 0.7
        assert confidence_from_strength(9) == 0.9
        assert confidence_from_strength(10) == 1.0
        assert confidence_from_strength(0) == 0.1
        assert confidence_from_strength(None) == 0.7
