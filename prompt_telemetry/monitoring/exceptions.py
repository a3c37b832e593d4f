from typing import List, Tuple


class TelemetryError(Exception):
    """Base class for telemetry pipeline errors"""


class MetricStoreError(TelemetryError):
    """Persistence layer failure. Always propagated to the caller."""


class DetectionError(TelemetryError):
    """Model-assisted detection failed; recovered inside the detector"""


class NotificationError(TelemetryError):
    """Alert delivery failed; recovered inside the dispatcher"""


class BatchIngestionError(TelemetryError):
    """Raised after a batch ingest when one or more entries failed to persist"""

    def __init__(self, failures: List[Tuple[int, Exception]], succeeded: int):
        self.failures = failures
        self.succeeded = succeeded
        super().__init__(
            f"{len(failures)} of {len(failures) + succeeded} log entries failed to ingest"
        )
