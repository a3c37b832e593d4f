import asyncio
import aiohttp
from typing import Optional
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
import structlog

from .models import LLMConfig


logger = structlog.get_logger(__name__)


class LLMClient:
    """Minimal client for the Anthropic Messages API"""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        self._rate_limiter = asyncio.Semaphore(config.max_concurrent_requests)

        logger.info("LLMClient initialized",
                    model=config.model_name,
                    timeout=config.timeout,
                    enabled=config.enabled)

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        """Ensure aiohttp session is created"""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={
                    "x-api-key": self.config.api_key,
                    "anthropic-version": self.config.api_version,
                    "Content-Type": "application/json"
                }
            )

    async def close(self):
        """Close the session"""
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    async def complete(self, prompt: str, max_tokens: Optional[int] = None,
                       temperature: Optional[float] = None) -> str:
        """Send a single user prompt and return the concatenated text reply"""
        async with self._rate_limiter:
            return await self._call_messages_api(
                prompt,
                max_tokens or self.config.max_tokens,
                self.config.temperature if temperature is None else temperature
            )

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(aiohttp.ClientConnectionError),
        reraise=True
    )
    async def _call_messages_api(self, prompt: str, max_tokens: int, temperature: float) -> str:
        await self._ensure_session()

        payload = {
            "model": self.config.model_name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}]
        }
        logger.debug("Calling LLM API", model=self.config.model_name, prompt_chars=len(prompt))

        async with self.session.post(self.config.api_url, json=payload) as response:
            if response.status != 200:
                body = await response.text()
                logger.error("LLM API error", status=response.status, response=body[:500])
                raise aiohttp.ClientResponseError(response.request_info, response.history,
                                                  status=response.status, message=body[:200])
            return _reply_text(await response.json())


def _reply_text(data: dict) -> str:
    """Concatenate the text blocks of a Messages API reply, ignoring tool use and the like"""
    return "".join(block.get("text", "") for block in data.get("content", [])
                   if block.get("type") == "text")
