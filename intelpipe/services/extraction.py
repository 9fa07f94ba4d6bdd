"""Local, deterministic entity extraction over item text."""

from __future__ import annotations

import ipaddress
import re
from typing import Dict, List, Tuple
from urllib.parse import urlsplit

from intelpipe.core.logging import get_logger
from intelpipe.schemas.entities import EntityType, ExtractedEntity
from intelpipe.schemas.items import CollectedItem

log = get_logger("extraction")

CONTEXT_WINDOW = 60

# Defanged indicator notation commonly used in advisories
_REFANG = [
    (re.compile(r"\bhxxp(s?)://", re.IGNORECASE), r"http\1://"),
    (re.compile(r"\[\.\]|\(\.\)|\{\.\}|\[dot\]", re.IGNORECASE), "."),
    (re.compile(r"\[@\]|\[at\]", re.IGNORECASE), "@"),
    (re.compile(r"\[:\]"), ":"),
]

# Extensions that look like TLDs in file names
FILE_EXTENSIONS = {
    "bat", "bin", "cfg", "conf", "csv", "dat", "dll", "doc", "docm", "docx", "exe", "gif", "gz",
    "htm", "html", "ini", "iso", "jar", "jpeg", "jpg", "js", "json", "lnk", "log", "msi", "php",
    "pdf", "png", "ppt", "pptx", "ps1", "py", "rar", "rtf", "sh", "svg", "sys", "tar", "tmp",
    "txt", "vbs", "xls", "xlsm", "xlsx", "xml", "yaml", "yml", "zip",
}

ORG_SUFFIXES = (
    "Inc", "Incorporated", "Corp", "Corporation", "Ltd", "Limited", "LLC", "GmbH", "PLC",
    "AG", "SA", "Group", "Holdings", "Technologies", "Systems",
)
_LEADING_NOISE = {"The", "A", "An", "And", "But", "Yesterday", "Today", "Meanwhile"}

PATTERNS: Dict[EntityType, re.Pattern] = {
    EntityType.URL: re.compile(r"\bhttps?://[^\s<>\"'{}|\\^`\[\]]+", re.IGNORECASE),
    EntityType.EMAIL: re.compile(r"\b[a-z0-9._%+-]+@(?:[a-z0-9-]+\.)+[a-z]{2,24}\b", re.IGNORECASE),
    EntityType.IP: re.compile(r"(?<![\d.])(?:\d{1,3}\.){3}\d{1,3}(?![\d.]*\d)"),
    EntityType.CVE: re.compile(r"\bCVE-\d{4}-\d{4,7}\b", re.IGNORECASE),
    EntityType.SHA256: re.compile(r"(?<![a-f0-9])[a-f0-9]{64}(?![a-f0-9])", re.IGNORECASE),
    EntityType.SHA1: re.compile(r"(?<![a-f0-9])[a-f0-9]{40}(?![a-f0-9])", re.IGNORECASE),
    EntityType.MD5: re.compile(r"(?<![a-f0-9])[a-f0-9]{32}(?![a-f0-9])", re.IGNORECASE),
    # hosts inside URLs and e-mail addresses are derived from those matches instead
    EntityType.DOMAIN: re.compile(
        r"(?<![\w@./-])(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,24}(?![\w@-])",
        re.IGNORECASE,
    ),
    EntityType.ORGANIZATION: re.compile(
        r"\b((?:[A-Z][\w&'-]*\s+){0,3}[A-Z][\w&'-]*)\s+(" + "|".join(ORG_SUFFIXES) + r")\b\.?"
    ),
    EntityType.PERSON: re.compile(r"\b(?:Mr|Mrs|Ms|Dr|Prof)\.?\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,2})\b"),
}

_TYPE_ORDER = {entity_type: index for index, entity_type in enumerate(EntityType)}

Candidate = Tuple[int, EntityType, str]


def refang(text: str) -> str:
    for pattern, replacement in _REFANG:
        text = pattern.sub(replacement, text)
    return text


def normalize_domain(value: str) -> str | None:
    value = value.strip().strip(".").lower()
    if "." not in value:
        return None
    tld = value.rsplit(".", 1)[1]
    if not tld.isalpha() or tld in FILE_EXTENSIONS:
        return None
    return value


def _normalize_url(value: str) -> str | None:
    value = value.rstrip(".,;:!?)'\"")
    try:
        parts = urlsplit(value)
    except ValueError:
        return None
    if not parts.netloc:
        return None
    return parts._replace(scheme=parts.scheme.lower(), netloc=parts.netloc.lower()).geturl()


def _normalize_ip(value: str) -> str | None:
    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        return None


class EntityExtractor:
    """Pattern-based extraction; no network I/O, same input gives same output."""

    def __init__(self, context_window: int = CONTEXT_WINDOW):
        self.context_window = context_window

    def extract(self, item: CollectedItem) -> List[ExtractedEntity]:
        text = refang(item.text)
        if not text:
            return []

        candidates = self._candidates(text)
        candidates.sort(key=lambda c: (c[0], _TYPE_ORDER[c[1]]))

        seen: set[tuple[str, str]] = set()
        entities: List[ExtractedEntity] = []
        for position, entity_type, value in candidates:
            key = (entity_type.value, value)
            if key in seen:
                continue
            seen.add(key)
            entities.append(
                ExtractedEntity(
                    type=entity_type.value,
                    value=value,
                    item_id=item.id,
                    context=self._context(text, position, len(value)),
                )
            )

        log.debug(f"Extracted {len(entities)} entities from item {item.id}")
        return entities

    def _candidates(self, text: str) -> List[Candidate]:
        found: List[Candidate] = []

        for match in PATTERNS[EntityType.URL].finditer(text):
            url = _normalize_url(match.group(0))
            if url is None:
                continue
            found.append((match.start(), EntityType.URL, url))
            host = urlsplit(url).hostname or ""
            ip = _normalize_ip(host)
            domain = None if ip else normalize_domain(host)
            if ip:
                found.append((match.start(), EntityType.IP, ip))
            elif domain:
                found.append((match.start(), EntityType.DOMAIN, domain))

        for match in PATTERNS[EntityType.EMAIL].finditer(text):
            email = match.group(0).lower()
            found.append((match.start(), EntityType.EMAIL, email))
            domain = normalize_domain(email.split("@", 1)[1])
            if domain:
                found.append((match.start(), EntityType.DOMAIN, domain))

        for match in PATTERNS[EntityType.IP].finditer(text):
            ip = _normalize_ip(match.group(0))
            if ip:
                found.append((match.start(), EntityType.IP, ip))

        for match in PATTERNS[EntityType.CVE].finditer(text):
            found.append((match.start(), EntityType.CVE, match.group(0).upper()))

        for entity_type in (EntityType.SHA256, EntityType.SHA1, EntityType.MD5):
            for match in PATTERNS[entity_type].finditer(text):
                found.append((match.start(), entity_type, match.group(0).lower()))

        for match in PATTERNS[EntityType.DOMAIN].finditer(text):
            domain = normalize_domain(match.group(0))
            if domain:
                found.append((match.start(), EntityType.DOMAIN, domain))

        for match in PATTERNS[EntityType.ORGANIZATION].finditer(text):
            words = match.group(1).split()
            while words and words[0] in _LEADING_NOISE:
                words.pop(0)
            if not words:
                continue
            name = " ".join(words + [match.group(2)])
            found.append((match.start(), EntityType.ORGANIZATION, name))

        for match in PATTERNS[EntityType.PERSON].finditer(text):
            found.append((match.start(1), EntityType.PERSON, " ".join(match.group(1).split())))

        return found

    def _context(self, text: str, position: int, length: int) -> str:
        start = max(0, position - self.context_window)
        end = min(len(text), position + length + self.context_window)
        return " ".join(text[start:end].split())
