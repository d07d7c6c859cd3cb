# ingestion/csv_sink.py
"""
Append-only CSV store for samples.

The file format is the only contract exposed to readers (chart renderers,
dashboards, ad hoc analysis):

    timestamp,container,cpu_pct,mem_usage_mb,mem_limit_mb,mem_pct

The header is written once, when the file is new or empty. Every row is
flushed as soon as it is written. A sink has no locking and must be the
only writer of its path.
"""

import csv
import logging
from pathlib import Path
from typing import Iterable, Optional, Union

import pandas as pd

from ingestion.sample import Sample

logger = logging.getLogger(__name__)

CSV_HEADER = ["timestamp", "container", "cpu_pct", "mem_usage_mb", "mem_limit_mb", "mem_pct"]
NUMERIC_COLUMNS = CSV_HEADER[2:]


class CSVSampleSink:
    """Single-writer, append-only sample file"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._file = None
        self._writer = None
        self.rows_written = 0

    def open(self) -> "CSVSampleSink":
        """
        Open (or create) the target file for appending.
        Raises OSError if the path cannot be opened; callers treat that as fatal.
        """
        if self._file is not None:
            return self

        need_header = not self.path.exists() or self.path.stat().st_size == 0

        self._file = open(self.path, "a", newline="", encoding="utf-8")
        self._writer = csv.writer(self._file)

        if need_header:
            self._writer.writerow(CSV_HEADER)
            self._flush()
            logger.info(f"Created sample file {self.path}")
        else:
            logger.info(f"Appending to existing sample file {self.path}")

        return self

    def append(self, sample: Sample) -> None:
        if self._writer is None:
            raise RuntimeError(f"Sink for {self.path} is not open")
        self._writer.writerow(sample.to_row())
        self._flush()
        self.rows_written += 1

    def append_many(self, samples: Iterable[Sample]) -> int:
        count = 0
        for sample in samples:
            self.append(sample)
            count += 1
        return count

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._writer = None

    def _flush(self) -> None:
        self._file.flush()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()


def load_samples(path: Union[str, Path], entity: Optional[str] = None) -> pd.DataFrame:
    """
    Read a sample file back into a DataFrame.

    Timestamps are parsed as UTC, metric columns as floats, and the
    entity column is kept as text.
    """
    # Entity names such as "NA" or "null" are text, not missing values
    df = pd.read_csv(path, dtype={"container": str}, keep_default_na=False)
    if list(df.columns) != CSV_HEADER:
        raise ValueError(f"{path} does not have the expected header: {list(df.columns)}")

    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df[NUMERIC_COLUMNS] = df[NUMERIC_COLUMNS].astype(float)

    if entity is not None:
        df = df[df["container"] == entity].reset_index(drop=True)

    return df
