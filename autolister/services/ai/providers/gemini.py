import google.generativeai as genai
import json
import logging
from typing import Dict, Any, List, Optional
from google.api_core.exceptions import GoogleAPICallError, ResourceExhausted, ServiceUnavailable
from autolister.exceptions import ExternalServiceError, GenerationError, RateLimitError
from autolister.services.ai.base import AIProvider

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    name = "gemini"

    def __init__(self, api_keys: List[str], model_name: str = "gemini-1.5-flash"):
        self.api_keys = [k for k in api_keys if k]  # Filter empty
        self.model_name = model_name
        self.current_key_index = 0
        self._configure_current_key()

    @property
    def is_available(self) -> bool:
        return bool(self.api_keys)

    def _configure_current_key(self):
        if not self.api_keys:
            logger.warning("No Gemini API Keys provided.")
            self.model = None
            return

        current_key = self.api_keys[self.current_key_index]
        genai.configure(api_key=current_key)
        self.model = genai.GenerativeModel(self.model_name)
        logger.info(f"Switched to Gemini Key Index: {self.current_key_index}")

    def _rotate_key(self) -> bool:
        """
        Rotates to the next available key.
        Returns True if rotation was successful (keys remaining), False otherwise.
        """
        if len(self.api_keys) <= 1:
            return False

        self.current_key_index = (self.current_key_index + 1) % len(self.api_keys)
        self._configure_current_key()
        return True

    async def _generate(self, content: Any, model: Optional[str] = None, **kwargs) -> str:
        if not self.model:
            raise ExternalServiceError(self.name, "Gemini API key is not configured", recoverable=False)

        max_retries = len(self.api_keys)
        attempts = 0

        while attempts < max_retries:
            target_model = self.model
            if model and model != self.model_name:
                target_model = genai.GenerativeModel(model)
            try:
                response = await target_model.generate_content_async(content, **kwargs)
                return response.text
            except (ResourceExhausted, ServiceUnavailable) as e:
                logger.warning(f"Gemini Key {self.current_key_index} exhausted/unavailable: {e}")
                attempts += 1
                if attempts >= max_retries or not self._rotate_key():
                    logger.error("All Gemini keys exhausted.")
                    raise RateLimitError(self.name, f"All Gemini keys exhausted: {e}") from e
            except GoogleAPICallError as e:
                logger.error(f"Gemini call failed: {e}")
                raise ExternalServiceError(self.name, f"Gemini call failed: {e}", status_code=getattr(e, "code", None)) from e

        raise RateLimitError(self.name, "All Gemini keys exhausted")

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        return await self._generate(prompt, model=model)

    async def generate_json(self, prompt: str, model: Optional[str] = None) -> Dict[str, Any] | List[Any]:
        text = await self._generate(
            prompt,
            model=model,
            generation_config={"response_mime_type": "application/json"},
        )
        try:
            return json.loads(text)
        except (TypeError, json.JSONDecodeError) as e:
            raise GenerationError("Gemini returned non-JSON output", provider=self.name, raw_output=text) from e
