from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional


class AIProvider(ABC):
    name: str = "provider"

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """
        True if at least one API key is configured.
        """
        pass

    @abstractmethod
    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        """
        Generates simple text response.
        """
        pass

    @abstractmethod
    async def generate_json(self, prompt: str, model: Optional[str] = None) -> Dict[str, Any] | List[Any]:
        """
        Generates structured JSON response. Raises GenerationError when the output is not valid JSON.
        """
        pass

    async def generate_image(self, prompt: str) -> Optional[str]:
        """
        Returns a generated image URL, or None when the provider has no image model.
        """
        return None
