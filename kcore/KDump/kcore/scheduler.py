import asyncio
from abc import abstractmethod

from .rpc import *
from .models import *
from .store import AbstractTaskStore

from aio_pika.abc import AbstractRobustConnection, AbstractChannel

GET_SYSTEM_CONFIG = 'scheduler.get_system_config'
CLAIM_TASK = 'scheduler.claim_task'
FINISH_TASK = 'scheduler.finish_task'
INSERT_TASK_LOG = 'scheduler.insert_task_log'
INSERT_SYSTEM_LOG = 'scheduler.insert_system_log'

# task ids waiting for a reproducer worker;
REPRODUCER_QUEUE = 'kbuilder'

def worker_control_queue(worker_id: str, command: str) -> str:
    return f'workers.{worker_id}.{command}'

class SchedulerClient(AbstractTaskStore):
    """Worker-side view of the scheduler; doubles as the worker's task store."""

    def __init__(self, mq_conn: AbstractRobustConnection):
        self._mq_conn = mq_conn
        self.get_system_config = RpcClient[SystemConfigRequest, SystemConfig](self._mq_conn, GET_SYSTEM_CONFIG, SystemConfig)
        self._claim_task = RpcClient[ClaimRequest, ClaimReceipt](self._mq_conn, CLAIM_TASK, ClaimReceipt)
        self._finish_task = RpcClient[FinishRequest, FinishReceipt](self._mq_conn, FINISH_TASK, FinishReceipt)

    async def claim_task(self, request: ClaimRequest) -> ClaimReceipt:
        return await self._claim_task(request)

    async def finish_task(self, request: FinishRequest) -> FinishReceipt:
        return await self._finish_task(request)

    async def start(self):
        await self.get_system_config.start()
        await self._claim_task.start()
        await self._finish_task.start()

class SchedulerServerBase:

    def __init__(self):
        self._mq_conn: AbstractRobustConnection | None = None
        self._rpc_servers: list[RpcServer] = []

    @abstractmethod
    async def get_system_config(self, request: SystemConfigRequest) -> SystemConfig:
        raise NotImplementedError()

    @abstractmethod
    async def claim_task(self, request: ClaimRequest) -> ClaimReceipt:
        raise NotImplementedError()

    @abstractmethod
    async def finish_task(self, request: FinishRequest) -> FinishReceipt:
        raise NotImplementedError()

    async def start(self, mq_conn: AbstractRobustConnection):
        self._mq_conn = mq_conn
        self._rpc_servers = [
            RpcServer[SystemConfigRequest, SystemConfig](mq_conn, GET_SYSTEM_CONFIG, self.get_system_config, SystemConfigRequest),
            RpcServer[ClaimRequest, ClaimReceipt](mq_conn, CLAIM_TASK, self.claim_task, ClaimRequest),
            RpcServer[FinishRequest, FinishReceipt](mq_conn, FINISH_TASK, self.finish_task, FinishRequest)
        ]
        for server in self._rpc_servers:
            await server.start()

class WorkerControl:
    """Scheduler-side calls into a single worker's control queue."""

    def __init__(self, mq_chan: AbstractChannel, timeout: float=10):
        self._raw = RawRpcClient(mq_chan)
        self._timeout = timeout

    async def start(self):
        await self._raw.start()

    async def abort_task(self, worker_id: str, request: TaskAbortRequest) -> bool:
        try:
            await asyncio.wait_for(
                self._raw.call(
                    worker_control_queue(worker_id, 'abort_task'),
                    request.model_dump_json().encode('utf-8')
                ),
                self._timeout
            )
        except asyncio.TimeoutError:
            # the worker is gone or busy elsewhere;
            return False
        return True
