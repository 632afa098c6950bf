from typing import Optional

from loguru import logger
from openai import AsyncOpenAI

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import ProviderError
from hangjegyzet.providers.base import TextEnhancer


class OpenAITextEnhancer(TextEnhancer):
    """Chat-completion backed transcript clean-up"""

    name = "openai"

    def __init__(self, config: Optional[Settings] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or default_settings
        self.api_key = self.config.OPENAI_API_KEY
        self.is_configured = bool(self.api_key) and not self.api_key.startswith("your-")
        self.client = client or AsyncOpenAI(api_key=self.api_key or "unset", base_url=self.config.OPENAI_API_BASE)
        logger.info(f"OpenAI text enhancer initialized with API key configured: {self.is_configured}")

    async def close(self) -> None:
        await self.client.close()

    async def enhance_text(self, text: str, instructions: str) -> str:
        """
        Rewrite text following the instructions

        Args:
            text: Text to improve
            instructions: System instructions

        Returns:
            Improved text

        Raises:
            ProviderError: If the API key is missing or the response is empty
        """
        if not self.is_configured:
            raise ProviderError(self.name, "API key is not properly configured", status_code=401, code="invalid_api_key")

        response = await self.client.chat.completions.create(
            model=self.config.OPENAI_CHAT_MODEL,
            messages=[
                {"role": "system", "content": instructions},
                {"role": "user", "content": text},
            ],
            max_tokens=self.config.AI_MAX_TOKENS,
            temperature=self.config.AI_TEMPERATURE,
        )
        content = response.choices[0].message.content
        if not content:
            raise ProviderError(self.name, "Empty completion returned", status_code=502)
        return content
