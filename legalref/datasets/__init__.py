from collections import Counter
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeAlias

from .contract_nli import parse_contract_nli
from .cuad import parse_cuad
from .downloader import DATASETS, Downloader, DownloadError, DownloadResult
from .templates import parse_bonterms, parse_commonaccord
from .types import (
    ALL_SOURCES,
    NLI_HYPOTHESES,
    DatasetCorruptError,
    DatasetSource,
    NormalizedRecord,
)

Parser: TypeAlias = Callable[[Path], Iterator[NormalizedRecord]]

PARSERS: dict[DatasetSource, Parser] = {
    DatasetSource.CUAD: parse_cuad,
    DatasetSource.CONTRACT_NLI: parse_contract_nli,
    DatasetSource.BONTERMS: parse_bonterms,
    DatasetSource.COMMONACCORD: parse_commonaccord,
}


def get_parser(source: DatasetSource) -> Parser:
    return PARSERS[source]


@dataclass
class DatasetStats:
    source: DatasetSource
    total_records: int = 0
    granularities: Counter[str] = field(default_factory=Counter)
    # CUAD categories, template headings, or NLI labels
    categories: Counter[str] = field(default_factory=Counter)
    hypotheses: Counter[int] = field(default_factory=Counter)


def dataset_stats(
    source: DatasetSource, path: Path, parser: Parser | None = None
) -> DatasetStats:
    """Counts records per granularity and per category in one pass."""
    stats = DatasetStats(source=source)
    for record in (parser or PARSERS[source])(path):
        stats.total_records += 1
        stats.granularities[record.granularity] += 1
        if record.nli_label is not None:
            stats.categories[record.nli_label] += 1
        elif record.category is not None:
            stats.categories[record.category] += 1
        if record.hypothesis_id is not None:
            stats.hypotheses[record.hypothesis_id] += 1
    return stats


__all__ = [
    "ALL_SOURCES",
    "DATASETS",
    "NLI_HYPOTHESES",
    "DatasetCorruptError",
    "DatasetSource",
    "DatasetStats",
    "DownloadError",
    "DownloadResult",
    "Downloader",
    "NormalizedRecord",
    "PARSERS",
    "Parser",
    "dataset_stats",
    "get_parser",
]
