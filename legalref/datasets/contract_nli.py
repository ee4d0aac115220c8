from collections.abc import Iterator
from pathlib import Path
from typing import Any, BinaryIO

import ijson  # type: ignore
import structlog

from .types import NLI_HYPOTHESES, DatasetCorruptError, DatasetSource, NormalizedRecord
from .utils import make_record, normalize_nli_label, normalize_text

log = structlog.get_logger()


def _items_prefix(f: BinaryIO) -> str:
    """
    ``item`` for a top-level array of contracts, ``documents.item`` for the
    published ``{"documents": [...]}`` layout.
    """
    head = f.read(1024).lstrip()
    f.seek(0)
    if not head:
        raise DatasetCorruptError("ContractNLI file is empty")
    char = head[:1]
    if char == b"[":
        return "item"
    if char == b"{":
        return "documents.item"
    raise DatasetCorruptError(f"ContractNLI file starts with {char!r}")


def _hypothesis_id(key: str) -> int:
    # "7" or "nda-7"
    return int(key.rsplit("-", 1)[-1])


def _span(raw: dict[str, Any], index: int, text: str) -> tuple[int, int, str] | None:
    spans = raw.get("spans") or []
    if index < 0 or index >= len(spans):
        return None
    span = spans[index]
    if isinstance(span, dict):
        start, end = int(span.get("start", 0)), int(span.get("end", 0))
        return start, end, str(span.get("text") or text[start:end])
    start, end = int(span[0]), int(span[1])
    return start, end, text[start:end]


def _annotations(raw: dict[str, Any]) -> dict[str, Any]:
    if "annotations" in raw:
        annotations = raw["annotations"] or {}
    else:
        annotation_sets = raw.get("annotation_sets") or []
        if not annotation_sets:
            return {}
        if not isinstance(annotation_sets[0], dict):
            raise TypeError("annotation_sets entries must be objects")
        annotations = annotation_sets[0].get("annotations") or {}
    if not isinstance(annotations, dict):
        raise TypeError(
            f"annotations must be an object, not {type(annotations).__name__}"
        )
    return annotations


def _contract_records(raw: dict[str, Any]) -> list[NormalizedRecord]:
    contract_id = str(raw["id"])
    text = str(raw["text"])
    annotations = _annotations(raw)
    records = [
        make_record(
            DatasetSource.CONTRACT_NLI,
            f"cnli:doc:{contract_id}",
            text,
            "document",
            metadata={
                "originalId": contract_id,
                "spanCount": len(raw.get("spans") or []),
                "annotationCount": len(annotations),
            },
        )
    ]
    for key, annotation in annotations.items():
        hypothesis_id = _hypothesis_id(key)
        nli_label = normalize_nli_label(str(annotation["choice"]))
        hypothesis_text = NLI_HYPOTHESES.get(
            hypothesis_id, f"Hypothesis {hypothesis_id}"
        )
        for span_index in annotation.get("spans") or []:
            span = _span(raw, int(span_index), text)
            if span is None:
                continue
            start, end, span_text = span
            if not normalize_text(span_text):
                continue
            records.append(
                make_record(
                    DatasetSource.CONTRACT_NLI,
                    f"cnli:span:{contract_id}:h{hypothesis_id}:{span_index}",
                    span_text,
                    "span",
                    section_path=[hypothesis_text],
                    hypothesis_id=hypothesis_id,
                    nli_label=nli_label,
                    metadata={
                        "contractId": contract_id,
                        "spanIndex": int(span_index),
                        "startOffset": start,
                        "endOffset": end,
                        "hypothesisText": hypothesis_text,
                    },
                )
            )
    return records


def parse_contract_nli(path: Path | str) -> Iterator[NormalizedRecord]:
    """
    Streams ContractNLI contracts with ijson, one contract in memory at a time.

    Each contract yields a ``document`` record followed by one ``span``
    record per evidence span of every hypothesis annotation, labelled with
    the hypothesis id and NLI label. Malformed contracts are skipped.

    Raises:
        DatasetCorruptError: The file is missing or not valid JSON.
    """
    try:
        f = open(path, "rb")
    except OSError as e:
        raise DatasetCorruptError(f"cannot open ContractNLI file {path}: {e}") from e
    with f:
        prefix = _items_prefix(f)
        position = 0
        try:
            for raw in ijson.items(f, prefix, use_float=True):
                position += 1
                try:
                    records = _contract_records(raw)
                except (
                    AttributeError,
                    IndexError,
                    KeyError,
                    TypeError,
                    ValueError,
                ) as e:
                    log.warning(
                        "skipping malformed ContractNLI contract",
                        position=position,
                        error=str(e),
                    )
                    continue
                yield from records
        except ijson.JSONError as e:
            raise DatasetCorruptError(
                f"ContractNLI file {path} is not valid JSON after contract "
                f"{position}: {e}"
            ) from e
