"""
Catalogue of reference-data lists served from the cache.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


HOUR = 60 * 60
DAY = 24 * HOUR


@dataclass(frozen=True)
class ReferenceDataset:
    """A low-churn lookup list mirrored from the upstream API."""

    key: str
    endpoint: str
    ttl_seconds: int

    def refresh_interval(self, max_interval: float) -> float:
        """Background refresh cadence, kept well inside the TTL."""
        return float(min(self.ttl_seconds / 2, max_interval))


REFERENCE_DATASETS: List[ReferenceDataset] = [
    ReferenceDataset("countries", "/countries", 1 * DAY),
    ReferenceDataset("devices", "/devices", 7 * DAY),
    ReferenceDataset("operating_systems", "/operating_systems", 7 * DAY),
    ReferenceDataset("browsers", "/browsers", 7 * DAY),
    ReferenceDataset("languages", "/languages", 30 * DAY),
    ReferenceDataset("time_zones", "/time_zones", 30 * DAY),
    ReferenceDataset("connection_types", "/connection_types", 30 * DAY),
]

DEFAULT_TTL_SECONDS = 1 * DAY

_BY_KEY: Dict[str, ReferenceDataset] = {dataset.key: dataset for dataset in REFERENCE_DATASETS}


def get_dataset(key: str) -> Optional[ReferenceDataset]:
    return _BY_KEY.get(key)


def ttl_for(key: str) -> int:
    dataset = _BY_KEY.get(key)
    return dataset.ttl_seconds if dataset else DEFAULT_TTL_SECONDS

