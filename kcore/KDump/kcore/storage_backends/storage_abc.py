from abc import ABC, abstractmethod
from ..models import StorageProviderConfig

class AbstractStorageBackend(ABC):
    """Read side of the blob store holding template userspace images."""

    @abstractmethod
    def __init__(self, storage_config: StorageProviderConfig):
        pass

    @abstractmethod
    async def resource_exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def download_resource(self, key: str, local_path: str):
        """Copy the blob at `key` to `local_path`; FileNotFoundError if absent."""
        pass

    @abstractmethod
    async def get_resource_url(self, key: str) -> str:
        pass
