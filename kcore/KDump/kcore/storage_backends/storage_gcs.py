from pydantic import BaseModel
from .storage_abc import AbstractStorageBackend, StorageProviderConfig
from typing import Literal
from ..utils import run_async

class GCSStorageProviderConfigSetting(BaseModel):
    bucketName: str

class GCSStorageProviderConfig(StorageProviderConfig):
    providerType: Literal['gcs']
    providerConfig: GCSStorageProviderConfigSetting

class GCSStorageBackend(AbstractStorageBackend):

    def __init__(self, storage_config: StorageProviderConfig):
        self.storage_config = GCSStorageProviderConfig(**storage_config.model_dump())

        from google.cloud.storage import Client
        self._client = Client()
        self._bucket = self._client.bucket(self.storage_config.providerConfig.bucketName)

    async def resource_exists(self, key: str) -> bool:
        return await run_async(self._bucket.blob(key).exists)

    async def download_resource(self, key: str, local_path: str):
        from google.cloud.storage.transfer_manager import download_chunks_concurrently
        blob = await run_async(self._bucket.get_blob, key)
        if blob is None:
            raise FileNotFoundError(f'gs://{self.storage_config.providerConfig.bucketName}/{key}')
        await run_async(download_chunks_concurrently, blob, local_path)

    async def get_resource_url(self, key: str) -> str:
        return f'https://storage.cloud.google.com/{self.storage_config.providerConfig.bucketName}/{key}'
