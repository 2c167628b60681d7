import logging
from typing import Optional, Protocol
from .settings import OPENAI_API_KEY, OPENAI_MODEL

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str: ...


class OpenAITextGenerator:
    """Single-shot chat completion; returns the message text ("" when absent)."""

    def __init__(self, api_key: Optional[str] = None, model: str = OPENAI_MODEL, temperature: float = 0.7):
        self.api_key = api_key if api_key is not None else OPENAI_API_KEY
        self.model = model
        self.temperature = temperature
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            if not self.api_key:
                raise RuntimeError("OPENAI_API_KEY is not set; please configure your .env")
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def generate(self, prompt: str) -> str:
        logger.info(f"Calling OpenAI ({self.model}) with prompt of {len(prompt)} chars")
        try:
            client = self._get_client()
            resp = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
            )
        except Exception as e:
            logger.error(f"OpenAI API call failed: {str(e)}")
            raise
        content = resp.choices[0].message.content if resp.choices else None
        return content or ""
