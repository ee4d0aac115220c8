import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import Any

from .types import DatasetSource, Granularity, NliLabel, NormalizedRecord

_whitespace_regex = re.compile(r"\s+")
_heading_regex = re.compile(r"^(#{1,6})\s+(.+)$")

_NLI_LABELS: dict[str, NliLabel] = {
    "entailment": "entailment",
    "contradiction": "contradiction",
    "notmentioned": "not_mentioned",
    "not_mentioned": "not_mentioned",
}


def normalize_text(text: str) -> str:
    """NFC-normalize and collapse every whitespace run to a single space."""
    return _whitespace_regex.sub(" ", unicodedata.normalize("NFC", text)).strip()


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def make_record(
    source: DatasetSource,
    source_id: str,
    text: str,
    granularity: Granularity,
    section_path: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    category: str | None = None,
    hypothesis_id: int | None = None,
    nli_label: NliLabel | None = None,
) -> NormalizedRecord:
    """Build a NormalizedRecord, normalizing ``text`` and hashing the result."""
    content = normalize_text(text)
    return NormalizedRecord(
        source=source,
        source_id=source_id,
        content=content,
        granularity=granularity,
        section_path=section_path or [],
        category=category,
        hypothesis_id=hypothesis_id,
        nli_label=nli_label,
        metadata=metadata or {},
        content_hash=content_hash(content),
    )


def normalize_nli_label(choice: str) -> NliLabel:
    """Map a ContractNLI choice ("Entailment", "NotMentioned", ...) to a label.

    Raises:
        ValueError: If the choice is not a known label.
    """
    label = _NLI_LABELS.get(choice.strip().lower())
    if label is None:
        raise ValueError(f"unknown NLI choice: {choice!r}")
    return label


@dataclass
class Heading:
    level: int
    text: str


def parse_heading(line: str) -> Heading | None:
    match = _heading_regex.match(line)
    if match is None:
        return None
    return Heading(level=len(match.group(1)), text=match.group(2).strip())
