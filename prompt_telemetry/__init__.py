"""
Prompt telemetry pipeline: log ingestion, issue detection and performance tracking
for monitored AI applications.
"""

__version__ = "0.1.0"

from .monitoring import TelemetryService

__all__ = ["TelemetryService", "__version__"]
