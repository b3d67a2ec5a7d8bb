# QueryBridge/core_logic/llm_client.py
import asyncio
import logging
import re
import time
from typing import Callable, Dict, Iterable, Optional, Sequence

from openai import AsyncOpenAI

from config.settings import LLM_BASE_URL, LLM_MODEL_NAME, LLM_RETRY_DELAY_SECONDS, QUOTA_ERROR_SENTINELS
from core_logic.errors import CompletionError, QuotaExhaustedError

llm_logger = logging.getLogger('QueryBridge.LLM')
llm_logger.setLevel(logging.INFO)


def is_quota_error(exc: BaseException, sentinels: Iterable[str] = QUOTA_ERROR_SENTINELS) -> bool:
    """True for an HTTP 429, or when the error text carries a quota sentinel as a standalone token."""
    if getattr(exc, "status_code", None) == 429:
        return True
    message = str(exc)
    return any(re.search(rf"(?<![A-Za-z0-9]){re.escape(sentinel)}(?![A-Za-z0-9])", message) for sentinel in sentinels)


class CredentialPool:
    """
    Round-robin pool of API keys shared by every in-flight request.
    Rotation is unguarded; two concurrent rotations at worst skip a key.
    """
    def __init__(self, keys: Sequence[str]):
        if not keys:
            raise ValueError("CredentialPool needs at least one API key")
        self.keys = tuple(keys)
        self.current_index = 0
        self.rotations = 0

    def current(self) -> str:
        return self.keys[self.current_index]

    def rotate(self) -> str:
        self.current_index = (self.current_index + 1) % len(self.keys)
        self.rotations += 1
        llm_logger.info(f"Rotated to API key #{self.current_index + 1} of {len(self.keys)}")
        return self.current()

    def __len__(self) -> int:
        return len(self.keys)


class OpenAICompletionClient:
    """complete(prompt) -> text over the chat completions endpoint."""
    def __init__(self, api_key: str, model: str = LLM_MODEL_NAME, base_url: Optional[str] = LLM_BASE_URL,
                 temperature: float = 0.0):
        self.model = model
        self.temperature = temperature
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise CompletionError("Empty response from LLM")
        return content.strip()


class RotatingCompletionClient:
    """
    Wraps per-key completion clients. A quota error rotates to the next key and
    retries after attempt x retry_delay seconds, at most once per key in the pool.
    Any other error propagates unchanged.
    """
    def __init__(
        self,
        pool: CredentialPool,
        client_factory: Callable[[str], object] = OpenAICompletionClient,
        retry_delay: float = LLM_RETRY_DELAY_SECONDS,
        sentinels: Iterable[str] = QUOTA_ERROR_SENTINELS,
    ):
        self.pool = pool
        self.client_factory = client_factory
        self.retry_delay = retry_delay
        self.sentinels = tuple(sentinels)
        self._clients: Dict[str, object] = {}

    def _client_for(self, api_key: str):
        if api_key not in self._clients:
            self._clients[api_key] = self.client_factory(api_key)
        return self._clients[api_key]

    async def complete(self, prompt: str) -> str:
        max_attempts = len(self.pool)
        last_error: Optional[BaseException] = None

        for attempt in range(max_attempts):
            client = self._client_for(self.pool.current())
            start_time = time.time()
            try:
                text = await client.complete(prompt)
                llm_logger.info(f"Completion Latency: {time.time() - start_time:.2f}s (attempt {attempt + 1})")
                return text
            except Exception as e:
                if not is_quota_error(e, self.sentinels):
                    raise
                last_error = e
                llm_logger.warning(f"Quota exceeded on API key #{self.pool.current_index + 1}: {str(e)[:100]}")
                if attempt == max_attempts - 1:
                    break
                self.pool.rotate()
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        llm_logger.error(f"All {max_attempts} API keys exhausted.")
        raise QuotaExhaustedError(f"All {max_attempts} API keys exhausted: {last_error}") from last_error
