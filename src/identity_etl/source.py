"""identity_etl.source

Lazy CSV row source with header aliasing and cooperative cancellation.
"""

from __future__ import annotations

import csv
import threading
from pathlib import Path
from typing import Iterator, Mapping, Sequence

from identity_etl.shared import ImportCancelled, normalize_headers

ImportRow = dict[str, "str | None"]


class CancelToken:
    """Single cooperative cancellation signal shared by source and store."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ImportCancelled("import cancelled")


def resolve_columns(
    headers: Sequence[str],
    columns: Mapping[str, Sequence[str]],
) -> dict[str, str | None]:
    """Return field → first matching header alias (case-sensitive), or None."""
    present = set(headers)
    resolved: dict[str, str | None] = {}
    for field_name, aliases in columns.items():
        resolved[field_name] = next((a for a in aliases if a in present), None)
    return resolved


def open_rows(
    path: Path,
    columns: Mapping[str, Sequence[str]],
    cancel: CancelToken | None = None,
) -> Iterator[ImportRow]:
    """Check the path now, then return a lazy iterator of mapped rows.

    Raises:
        FileNotFoundError: If path does not exist (before streaming starts).
    """
    if not path.is_file():
        raise FileNotFoundError(f"CSV file not found: {path}")
    return _stream_rows(path, columns, cancel or CancelToken())


def _stream_rows(
    path: Path,
    columns: Mapping[str, Sequence[str]],
    cancel: CancelToken,
) -> Iterator[ImportRow]:
    with path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        headers = [h.strip() for h in (reader.fieldnames or [])]
        header_for = resolve_columns(headers, columns)
        for raw_row in reader:
            cancel.raise_if_cancelled()
            row = normalize_headers(raw_row)
            yield {
                field_name: (row.get(header) if header is not None else None)
                for field_name, header in header_for.items()
            }
