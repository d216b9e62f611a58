from abc import ABC, abstractmethod
from typing import Dict


class BaseStorage(ABC):
    """Remote object store the sync queue relays finished artifacts to."""

    @abstractmethod
    def put_object(self, key: str, body: bytes, content_type: str, metadata: Dict[str, str]) -> str:
        """Store ``body`` under ``key``; raise ``TransportError`` on failure."""

    @abstractmethod
    def delete_object(self, key: str) -> None:
        pass
