from dataclasses import dataclass, fields
from typing import Optional
import os
from dotenv import load_dotenv


@dataclass
class TelemetrySettings:
    """Runtime settings for the telemetry service"""
    db_path: str = "./data/telemetry.db"
    detection_interval_seconds: float = 5.0
    detection_batch_size: int = 10
    metrics_flush_interval_seconds: float = 30.0
    metrics_flush_threshold: int = 50
    model_detection_timeout: float = 15.0
    notification_timeout: float = 10.0
    model_detection_enabled: bool = True

    def __post_init__(self):
        """Load values from environment variables if not explicitly set"""
        load_dotenv()

        env_names = {
            "db_path": "TELEMETRY_DB_PATH",
            "detection_interval_seconds": "DETECTION_INTERVAL_SECONDS",
            "detection_batch_size": "DETECTION_BATCH_SIZE",
            "metrics_flush_interval_seconds": "METRICS_FLUSH_INTERVAL_SECONDS",
            "metrics_flush_threshold": "METRICS_FLUSH_THRESHOLD",
            "model_detection_timeout": "MODEL_DETECTION_TIMEOUT",
            "notification_timeout": "NOTIFICATION_TIMEOUT",
            "model_detection_enabled": "MODEL_DETECTION_ENABLED",
        }

        for f in fields(self):
            value = os.getenv(env_names[f.name])
            if value is None or getattr(self, f.name) != f.default:
                continue
            if f.type is bool:
                setattr(self, f.name, value.lower() in ("1", "true", "yes"))
            else:
                setattr(self, f.name, f.type(value))

    def validate(self) -> Optional[str]:
        """Validate configuration. Returns None if valid, error message if invalid."""
        if self.detection_interval_seconds <= 0:
            return f"detection_interval_seconds must be greater than 0, got {self.detection_interval_seconds}"
        if self.detection_batch_size < 1:
            return f"detection_batch_size must be at least 1, got {self.detection_batch_size}"
        if self.metrics_flush_interval_seconds <= 0:
            return f"metrics_flush_interval_seconds must be greater than 0, got {self.metrics_flush_interval_seconds}"
        if self.metrics_flush_threshold < 1:
            return f"metrics_flush_threshold must be at least 1, got {self.metrics_flush_threshold}"
        if self.model_detection_timeout <= 0:
            return f"model_detection_timeout must be greater than 0, got {self.model_detection_timeout}"
        if self.notification_timeout <= 0:
            return f"notification_timeout must be greater than 0, got {self.notification_timeout}"
        return None
