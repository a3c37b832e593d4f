"""LLM client used for model-assisted issue detection"""

from .models import LLMConfig
from .client import LLMClient

__all__ = ["LLMConfig", "LLMClient"]
