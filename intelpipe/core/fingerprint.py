"""Content normalisation, exact fingerprints and near-duplicate signatures.

Exact duplicates are detected with a SHA-256 over normalised text. Near
duplicates use a SimHash: every token hash votes +1/-1 per bit position
(weighted by term frequency) and the signature keeps the bits whose vote is
positive. Similar texts share most votes, so their signatures differ in only
a few bits.
"""

from __future__ import annotations

import hashlib
import re
from collections import Counter
from typing import Any, Mapping, Optional

SIGNATURE_BITS = 64

# Fields that make up the canonical text of a structured payload, in order.
CANONICAL_TEXT_FIELDS = ("title", "summary", "description", "content", "body", "text")

_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)
_WS_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    if not text:
        return ""
    text = _PUNCT_RE.sub("", text.lower())
    return _WS_RE.sub(" ", text).strip()


def canonical_text(
    content: Any,
    content_type: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> str:
    """Concatenate the textual parts of an item payload in a stable order."""
    if content_type == "text":
        return content if isinstance(content, str) else ""

    if content_type == "structured":
        source = content if isinstance(content, Mapping) else {}
    else:
        # binary references carry no text of their own
        source = metadata or {}

    parts = []
    for field in CANONICAL_TEXT_FIELDS:
        value = source.get(field)
        if isinstance(value, str) and value.strip():
            parts.append(value.strip())
    return " ".join(parts)


def content_fingerprint(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def _token_hash(token: str, bits: int) -> int:
    digest = hashlib.md5(token.encode("utf-8")).digest()
    return int.from_bytes(digest, "big") >> (128 - bits)


def simhash(text: str, bits: int = SIGNATURE_BITS) -> int:
    """Locality-sensitive signature of ``text``; 0 for empty input."""
    if not 0 < bits <= 128:
        raise ValueError("bits must be between 1 and 128")

    tokens = normalize_text(text).split()
    if not tokens:
        return 0

    votes = [0] * bits
    for token, count in Counter(tokens).items():
        h = _token_hash(token, bits)
        for i in range(bits):
            if (h >> i) & 1:
                votes[i] += count
            else:
                votes[i] -= count

    signature = 0
    for i, vote in enumerate(votes):
        if vote > 0:
            signature |= 1 << i
    return signature


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def signature_to_hex(signature: int, bits: int = SIGNATURE_BITS) -> str:
    return format(signature, f"0{bits // 4}x")


def signature_from_hex(value: str) -> int:
    return int(value, 16)
