from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class DatasetSource(str, Enum):
    """Identifiers of the external reference corpora."""

    CUAD = "cuad"
    CONTRACT_NLI = "contract_nli"
    BONTERMS = "bonterms"
    COMMONACCORD = "commonaccord"

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


ALL_SOURCES: list[DatasetSource] = list(DatasetSource)

Granularity = Literal["document", "section", "clause", "span", "template"]

NliLabel = Literal["entailment", "contradiction", "not_mentioned"]


class NormalizedRecord(BaseModel):
    """
    The common shape every parser emits, ready for embedding and storage.

    Attributes:
        source: The corpus the record came from.
        source_id: Identifier unique within the source, for example
            ``cuad:clause:<contract>:<start>-<end>``.
        content: NFC-normalized, whitespace-collapsed text to embed.
        granularity: The structural level the record represents.
        section_path: Hierarchical location within the source document.
        category: CUAD category or template section heading.
        hypothesis_id: ContractNLI hypothesis number (1-17).
        nli_label: ContractNLI label for the evidence span.
        metadata: Format-specific provenance.
        content_hash: SHA-256 of ``content``; the durable dedup key.
    """

    model_config = ConfigDict(frozen=True)

    source: DatasetSource
    source_id: str
    content: str
    granularity: Granularity
    section_path: list[str] = Field(default_factory=list)
    category: str | None = None
    hypothesis_id: int | None = None
    nli_label: NliLabel | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    content_hash: str


# ContractNLI's 17 hypotheses, keyed by hypothesis number
NLI_HYPOTHESES: dict[int, str] = {
    1: "All Confidential Information shall be expressly identified by the Disclosing Party.",  # noqa: E501
    2: "Confidential Information shall only include technical information.",
    3: "All Confidential Information shall be returned to the Disclosing Party upon termination of the Agreement.",  # noqa: E501
    4: "Confidential Information may be acquired independently.",
    5: "Confidential Information may be disclosed to employees.",
    6: "Confidential Information may be shared with third-parties with permission.",
    7: "Confidential Information may be disclosed pursuant to law.",
    8: "Receiving Party shall not disclose the fact that Agreement was agreed.",
    9: "Receiving Party shall not disclose the terms of Agreement.",
    10: "Receiving Party shall not solicit Disclosing Party's employees.",
    11: "Receiving Party shall not solicit Disclosing Party's customers.",
    12: "Receiving Party shall not use Confidential Information for competing business.",  # noqa: E501
    13: "Agreement shall be valid for some period after termination.",
    14: "Agreement shall not grant Receiving Party any right to Confidential Information.",  # noqa: E501
    15: "Receiving Party may create derivative works from Confidential Information.",
    16: "Receiving Party may retain some Confidential Information.",
    17: "Some obligations of Agreement may survive termination.",
}


class DatasetCorruptError(Exception):
    """A dataset file is unreadable as a whole; its parser stops."""
