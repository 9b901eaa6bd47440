"""Secret bundle interface."""

from abc import ABC, abstractmethod
from typing import Any


class SecretStore(ABC):
    """Resolves a bundle name to its decrypted payload."""

    @abstractmethod
    async def load(self, name: str) -> dict[str, Any]:
        """Load and decrypt a bundle.

        Raises:
            DecryptError: If the bundle is missing, unreadable or cannot be decrypted
        """
        ...
