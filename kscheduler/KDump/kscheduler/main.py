import os, asyncio, uvicorn, aio_pika
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import List

from .config import SchedulerConfig
from .backend import SchedulerBackend
from .scheduler_server import SchedulerServer

class SystemInfo(BaseModel):
    deploymentName: str
    workerTypes: List[str]

class SchedulerApplication:

    def __init__(self, config: SchedulerConfig):
        self._config = config
        self.backend = SchedulerBackend(config)
        self.server = SchedulerServer(self.backend)

    async def get_system_info(self) -> SystemInfo:
        return SystemInfo(
            deploymentName=self._config.deploymentName,
            workerTypes=sorted(self._config.workerConfigs)
        )

    async def mount_apis(self, app: FastAPI):
        @app.get('/system/info')
        async def get_system_info() -> SystemInfo:
            return await self.get_system_info()

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        await self.backend.start()
        mq_conn = await aio_pika.connect_robust(os.environ['KDUMP_MQ_CONN_URL'])
        try:
            await self.server.start(mq_conn)
            yield
        finally:
            await mq_conn.close()
            await self.backend.stop()

    async def build_api(self) -> FastAPI:
        app = FastAPI(lifespan=self.lifespan)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self._config.allowedOrigins
        )
        await self.backend.mount_apis(app)
        await self.server.mount_apis(app)
        await self.mount_apis(app)
        return app

    def main(self):
        # routes only; the database and the broker are opened by the lifespan;
        api = asyncio.run(self.build_api())
        uvicorn.run(api, host=self._config.listen, port=self._config.listenPort)
