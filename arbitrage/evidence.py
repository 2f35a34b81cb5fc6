"""Claim and strength extraction from cited search answers.

Search answers come back as prose with inline citation markers (``[1]``,
``[2, 3]``) and, when prompted, per-claim ratings such as ``Strength: 7/10``.
These helpers map each citation index to the sentence that cites it and to
the rating attached to that sentence, so evidence rows can carry a specific
claim and a confidence rather than the whole answer.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urlparse

_LINE_SPLIT_RE = re.compile(r"\n+")
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")
_CITATION_RE = re.compile(r"\[(\d+(?:\s*,\s*\d+)*)\]")
_CITATION_STRIP_RE = re.compile(r"\s*\[(\d+(?:\s*,\s*\d+)*)\]")
_STRENGTH_RE = re.compile(r"\b(?:evidence\s*)?strength\s*:\s*(\d{1,2})\s*/\s*10\b", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_CONFIDENCE = 0.7
MAX_CLAIM_LENGTH = 500


@dataclass
class CitationClaims:
    claim_by_citation: dict[int, str] = field(default_factory=dict)
    strength_by_citation: dict[int, int] = field(default_factory=dict)
    fallback_claim: str = ""


def _segments(content: str) -> list[str]:
    parts: list[str] = []
    for line in _LINE_SPLIT_RE.split(content):
        line = line.strip()
        if not line:
            continue
        for match in _SENTENCE_RE.finditer(line):
            sentence = match.group(0).strip()
            if sentence:
                parts.append(sentence)
    return parts


def _citation_indices(segment: str) -> list[int]:
    indices: list[int] = []
    for match in _CITATION_RE.finditer(segment):
        for part in match.group(1).split(","):
            part = part.strip()
            if part.isdigit():
                indices.append(int(part))
    return indices


def _strength(segment: str) -> int | None:
    match = _STRENGTH_RE.search(segment)
    if not match:
        return None
    return max(1, min(10, int(match.group(1))))


def _clean_claim(segment: str) -> str:
    text = _CITATION_STRIP_RE.sub("", segment)
    text = _STRENGTH_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def extract_citation_claims(content: str, policy_name: str) -> CitationClaims:
    """Map citation indices to their claim text and strength rating.

    The first segment citing an index supplies its claim; the first rating
    seen for an index wins. A rating in a segment without markers applies to
    the indices of the previous cited segment. Segments that hold nothing but
    markers and ratings are skipped. Never raises.
    """
    result = CitationClaims()
    segments = _segments(content or "")
    last_indices: list[int] = []

    for segment in segments:
        indices = _citation_indices(segment)
        strength = _strength(segment)

        if not indices:
            if strength is not None:
                for index in last_indices:
                    result.strength_by_citation.setdefault(index, strength)
            continue

        claim = _clean_claim(segment)
        if not claim:
            continue
        for index in indices:
            result.claim_by_citation.setdefault(index, claim)
            if strength is not None:
                result.strength_by_citation.setdefault(index, strength)
        last_indices = indices

    name = (policy_name or "").lower()
    fallback = next((s for s in segments if name and name in s.lower()), None)
    if fallback is None:
        fallback = segments[0] if segments else (content or "")[:MAX_CLAIM_LENGTH]
    result.fallback_claim = fallback
    return result


def derive_publisher(url: str) -> str | None:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


def normalize_snippet(snippet: str | None, max_length: int = 280) -> str | None:
    if not snippet:
        return None
    text = _WHITESPACE_RE.sub(" ", snippet).strip()
    if not text:
        return None
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def infer_source_type(url: str) -> str:
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        host = ""
    target = host or url.lower()
    if "oecd" in target:
        return "oecd_report"
    if "gov" in target or "government" in target:
        return "gov_doc"
    if "edu" in target or "academic" in target:
        return "academic"
    return "news"


def confidence_from_strength(strength: int | None) -> float:
    if strength is None:
        return DEFAULT_CONFIDENCE
    return max(0.1, min(1.0, strength / 10))
