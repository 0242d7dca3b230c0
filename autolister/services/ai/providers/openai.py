import logging
import json
from typing import Dict, Any, List, Optional
import openai
from openai import AsyncOpenAI, RateLimitError, AuthenticationError, APIConnectionError
from autolister import exceptions
from autolister.services.ai.base import AIProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    name = "openai"

    def __init__(self, api_keys: List[str], model_name: str = "gpt-4o-mini"):
        self.api_keys = [k for k in api_keys if k]
        self.model_name = model_name
        self.current_key_index = 0
        self.client: Optional[AsyncOpenAI] = None
        self._configure_current_key()

    @property
    def is_available(self) -> bool:
        return bool(self.api_keys)

    def _configure_current_key(self):
        if not self.api_keys:
            logger.warning("No OpenAI API Keys provided.")
            self.client = None
            return

        current_key = self.api_keys[self.current_key_index]
        self.client = AsyncOpenAI(api_key=current_key)
        logger.info(f"Switched to OpenAI Key Index: {self.current_key_index}")

    def _rotate_key(self) -> bool:
        if len(self.api_keys) <= 1:
            return False

        self.current_key_index = (self.current_key_index + 1) % len(self.api_keys)
        self._configure_current_key()
        return True

    async def _complete(self, messages: List[Dict[str, Any]], model: Optional[str] = None, **kwargs) -> str:
        if not self.client:
            raise exceptions.ExternalServiceError(self.name, "OpenAI API key is not configured", recoverable=False)

        target_model = model or self.model_name
        max_retries = len(self.api_keys)
        attempts = 0

        while attempts < max_retries:
            try:
                response = await self.client.chat.completions.create(
                    model=target_model,
                    messages=messages,
                    **kwargs
                )
                return response.choices[0].message.content or ""
            except openai.APITimeoutError as e:
                raise exceptions.ServiceTimeoutError(self.name, f"OpenAI request timed out: {e}") from e
            except (RateLimitError, AuthenticationError, APIConnectionError) as e:
                logger.warning(f"OpenAI Key {self.current_key_index} error: {e}. Rotating.")
                attempts += 1
                if attempts >= max_retries or not self._rotate_key():
                    logger.error("All OpenAI keys exhausted.")
                    if isinstance(e, AuthenticationError):
                        raise exceptions.AuthenticationError(self.name, f"OpenAI rejected credentials: {e}") from e
                    if isinstance(e, APIConnectionError):
                        raise exceptions.ExternalServiceError(self.name, f"OpenAI connection failed: {e}") from e
                    raise exceptions.RateLimitError(self.name, f"All OpenAI keys exhausted: {e}") from e
            except openai.APIError as e:
                logger.error(f"OpenAI call failed: {e}")
                raise exceptions.ExternalServiceError(
                    self.name, f"OpenAI call failed: {e}", status_code=getattr(e, "status_code", None)
                ) from e

        raise exceptions.RateLimitError(self.name, "All OpenAI keys exhausted")

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        return await self._complete(
            [{"role": "user", "content": prompt}],
            model=model,
            temperature=0.7
        )

    async def generate_json(self, prompt: str, model: Optional[str] = None) -> Dict[str, Any] | List[Any]:
        messages = [
            {"role": "system", "content": "You are a helpful assistant. Output valid JSON only."},
            {"role": "user", "content": prompt},
        ]
        content = await self._complete(
            messages,
            model=model,
            response_format={"type": "json_object"},
            temperature=0.3
        )
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise exceptions.GenerationError("OpenAI returned non-JSON output", provider=self.name, raw_output=content) from e

    async def generate_image(self, prompt: str) -> Optional[str]:
        if not self.client:
            raise exceptions.ExternalServiceError(self.name, "OpenAI API key is not configured", recoverable=False)
        try:
            response = await self.client.images.generate(
                model="dall-e-3",
                prompt=prompt,
                n=1,
                size="1024x1024",
                quality="standard",
            )
        except openai.APIError as e:
            logger.error(f"OpenAI image generation failed: {e}")
            raise exceptions.ExternalServiceError(
                self.name, f"OpenAI image generation failed: {e}", status_code=getattr(e, "status_code", None)
            ) from e
        data = response.data or []
        return data[0].url if data and data[0].url else None
