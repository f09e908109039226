from pydantic import BaseModel
from .storage_abc import AbstractStorageBackend, StorageProviderConfig
from typing import Literal
from ..utils import run_async
import shutil, os

class LocalStorageProviderConfigSetting(BaseModel):
    root: str

class LocalStorageProviderConfig(StorageProviderConfig):
    providerType: Literal['local']
    providerConfig: LocalStorageProviderConfigSetting

class LocalStorageBackend(AbstractStorageBackend):

    def __init__(self, storage_config: StorageProviderConfig):
        self.storage_config = LocalStorageProviderConfig(**storage_config.model_dump())
        self._root = self.storage_config.providerConfig.root

    def _path(self, key: str) -> str:
        return os.path.join(self._root, key)

    async def resource_exists(self, key: str) -> bool:
        return await run_async(os.path.isfile, self._path(key))

    async def download_resource(self, key: str, local_path: str):
        if not await self.resource_exists(key):
            raise FileNotFoundError(self._path(key))
        await run_async(os.makedirs, os.path.dirname(local_path), exist_ok=True)
        await run_async(shutil.copyfile, self._path(key), local_path)

    async def get_resource_url(self, key: str) -> str:
        return os.path.abspath(self._path(key))
