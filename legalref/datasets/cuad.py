from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pyarrow as pa
import pyarrow.parquet as pq
import structlog

from .types import DatasetCorruptError, DatasetSource, NormalizedRecord
from .utils import make_record, normalize_text

log = structlog.get_logger()

REQUIRED_COLUMNS = (
    "contract_name",
    "contract_text",
    "category",
    "clause_text",
    "start_ix",
    "end_ix",
)
ROWS_PER_BATCH = 256


def _row_records(
    row: dict[str, Any], seen_contracts: set[str]
) -> Iterator[NormalizedRecord]:
    contract_name = str(row.get("contract_name") or "")
    category = str(row.get("category") or "")
    start_ix = int(row.get("start_ix") or 0)
    end_ix = int(row.get("end_ix") or 0)

    if contract_name and contract_name not in seen_contracts:
        seen_contracts.add(contract_name)
        yield make_record(
            DatasetSource.CUAD,
            f"cuad:doc:{contract_name}",
            str(row.get("contract_text") or ""),
            "document",
            metadata={"contractName": contract_name},
        )

    clause_text = normalize_text(str(row.get("clause_text") or ""))
    if clause_text:
        yield make_record(
            DatasetSource.CUAD,
            f"cuad:clause:{contract_name}:{start_ix}-{end_ix}",
            clause_text,
            "clause",
            section_path=[category],
            category=category or None,
            metadata={
                "contractName": contract_name,
                "startIndex": start_ix,
                "endIndex": end_ix,
            },
        )


def parse_cuad(path: Path | str) -> Iterator[NormalizedRecord]:
    """
    Streams the CUAD parquet file one row batch at a time.

    Yields a ``document`` record the first time each contract is seen and a
    ``clause`` record, tagged with its CUAD category, for every annotated
    clause.

    Raises:
        DatasetCorruptError: The file is not readable parquet or lacks a
            required column.
    """
    try:
        parquet_file = pq.ParquetFile(path)
    except (OSError, pa.ArrowException) as e:
        raise DatasetCorruptError(f"cannot read CUAD parquet {path}: {e}") from e

    missing = set(REQUIRED_COLUMNS) - set(parquet_file.schema_arrow.names)
    if missing:
        raise DatasetCorruptError(
            f"CUAD parquet {path} lacks columns {sorted(missing)}"
        )

    seen_contracts: set[str] = set()
    row_number = 0
    try:
        for record_batch in parquet_file.iter_batches(
            batch_size=ROWS_PER_BATCH, columns=list(REQUIRED_COLUMNS)
        ):
            for row in record_batch.to_pylist():
                row_number += 1
                try:
                    records = list(_row_records(row, seen_contracts))
                except (TypeError, ValueError) as e:
                    log.warning(
                        "skipping malformed CUAD row", row=row_number, error=str(e)
                    )
                    continue
                yield from records
    except (OSError, pa.ArrowException) as e:
        raise DatasetCorruptError(
            f"CUAD parquet {path} unreadable after row {row_number}: {e}"
        ) from e
