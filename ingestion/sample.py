# ingestion/sample.py
"""
Canonical sample schema shared by every collector backend.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List

MIB = 1024 * 1024


@dataclass(frozen=True)
class Sample:
    """
    One normalized utilization record for a single entity at one instant.
    Percentages are relative to the declared limit; 0 means "no limit".
    """
    captured_at: datetime
    entity_name: str
    cpu_pct: float = 0.0
    mem_usage_mb: float = 0.0
    mem_limit_mb: float = 0.0
    mem_pct: float = 0.0

    def to_row(self) -> List[str]:
        """Format as a CSV row (RFC3339 UTC timestamp, two decimal digits)"""
        ts = self.captured_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return [
            ts,
            self.entity_name,
            f"{self.cpu_pct:.2f}",
            f"{self.mem_usage_mb:.2f}",
            f"{self.mem_limit_mb:.2f}",
            f"{self.mem_pct:.2f}",
        ]

    def describe(self) -> str:
        return (
            f"{self.entity_name}  cpu={self.cpu_pct:.2f}%  "
            f"mem={self.mem_usage_mb:.1f}/{self.mem_limit_mb:.1f} MB ({self.mem_pct:.2f}%)"
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
