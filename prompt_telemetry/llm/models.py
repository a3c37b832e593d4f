from dataclasses import dataclass
from typing import Optional
import os
from dotenv import load_dotenv


DEFAULT_API_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_MODEL = "claude-3-haiku-20240307"


@dataclass
class LLMConfig:
    """Configuration for the model-assisted detection client"""
    api_url: str = DEFAULT_API_URL
    api_key: str = ""
    model_name: str = DEFAULT_MODEL
    api_version: str = "2023-06-01"
    max_tokens: int = 1000
    temperature: float = 0.0
    timeout: float = 15.0
    max_concurrent_requests: int = 5

    def __post_init__(self):
        """Load values from environment variables if not explicitly set"""
        load_dotenv()

        if not self.api_key:
            self.api_key = os.getenv("LLM_API_KEY") or os.getenv("ANTHROPIC_API_KEY", "")
        if self.api_url == DEFAULT_API_URL:
            self.api_url = os.getenv("LLM_API_URL", self.api_url)
        if self.model_name == DEFAULT_MODEL:
            self.model_name = os.getenv("LLM_MODEL", self.model_name)
        if self.timeout == 15.0:
            self.timeout = float(os.getenv("MODEL_DETECTION_TIMEOUT", str(self.timeout)))

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.api_url)

    def validate(self) -> Optional[str]:
        """Validate configuration. Returns None if valid, error message if invalid."""
        if self.timeout <= 0:
            return f"timeout must be greater than 0, got {self.timeout}"
        if self.max_tokens <= 0:
            return f"max_tokens must be greater than 0, got {self.max_tokens}"
        if not 0.0 <= self.temperature <= 1.0:
            return f"temperature must be between 0 and 1, got {self.temperature}"
        return None
