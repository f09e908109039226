import platform, traceback, os, asyncio
from signal import SIGTERM
from abc import abstractmethod
from typing import TYPE_CHECKING

from .rpc import *
from .models import *
from .errors import TaskExceptionError, CancelledCode, InternalErrorCode
from .scheduler import SchedulerClient, INSERT_TASK_LOG, INSERT_SYSTEM_LOG, worker_control_queue
from .utils import get_type_fullname, utc_now

from aio_pika import connect_robust

if TYPE_CHECKING:
    from .orchestrator import TaskOrchestrator

class TaskBase:

    def __init__(self, orchestrator: 'TaskOrchestrator', task: Task):
        self._orchestrator = orchestrator
        self.task = task
        self.task_id = task.taskId
        self.argument = task.argument
        self.asyncio_task: asyncio.Task | None = None

    @classmethod
    def from_system_config(cls, orchestrator: 'TaskOrchestrator', task: Task, system_config: SystemConfig):
        return cls(orchestrator, task)

    async def report_job_log(self, message):
        await self._orchestrator.report_task_log(self.task_id, message)

    async def on_clean(self):
        pass

    @abstractmethod
    async def on_task(self) -> TaskOutcome:
        pass

    async def _clean(self):
        try:
            await self.on_clean()
        except Exception as e:
            await self.report_job_log(f'Cleanup failed: {get_type_fullname(type(e))}: {e}')

    async def run(self) -> TaskOutcome:
        try:
            self.asyncio_task = asyncio.create_task(self.on_task())
            outcome: TaskOutcome = await self.asyncio_task
        except TaskExceptionError as e:
            outcome = TaskOutcome(status=TaskStatus.Failed, result=e.describe())
            await self.report_job_log(traceback.format_exc())
        except asyncio.CancelledError as e:
            reason = e.args[0] if e.args else None
            outcome = TaskOutcome(
                status=TaskStatus.Failed,
                result=CancelledCode if reason is None else f'{CancelledCode}: {reason}'
            )
        except Exception as e:
            outcome = TaskOutcome(
                status=TaskStatus.Failed,
                result=f'{InternalErrorCode}: {get_type_fullname(type(e))}: {e}'
            )
            await self.report_job_log(traceback.format_exc())
        finally:
            self.asyncio_task = None
        await self._clean()
        return outcome

class Worker:

    def __init__(
        self,
        conn_url: str,
        worker_type: str,
        task_type: type[TaskBase]
    ):
        self._conn_url = conn_url

        self.mq_conn: AbstractRobustConnection = None
        self.scheduler: SchedulerClient = None
        self._abort_task: RpcServer[TaskAbortRequest, None] = None

        self.worker_type = worker_type
        self.worker_id = os.environ.get('KDUMP_WORKER_ID', platform.node())

        self._blocker_lock = asyncio.Semaphore(0)
        self._closed = False
        self._task_type = task_type
        self._idle = asyncio.Event()
        self._idle.set()

        self.system_config: SystemConfig = None
        self.orchestrator: 'TaskOrchestrator' = None

    async def _send_message(self, queue_name: str, message: BaseModel):
        await self.log_chan.default_exchange.publish(
            Message(body=message.model_dump_json().encode('utf-8')),
            routing_key=queue_name,
        )

    async def report_system_log(self, message):
        await self._send_message(
            INSERT_SYSTEM_LOG,
            SystemLog(
                timeStamp=utc_now(),
                workerType=self.worker_type,
                workerId=self.worker_id,
                content=message
            )
        )

    async def report_task_log(self, task_id: str, message):
        await self._send_message(
            INSERT_TASK_LOG,
            TaskLog(
                timeStamp=utc_now(),
                taskId=task_id,
                workerId=self.worker_id,
                content=message
            )
        )

    def _create_task(self, orchestrator: 'TaskOrchestrator', task: Task) -> TaskBase:
        return self._task_type.from_system_config(orchestrator, task, self.system_config)

    async def abort_task(self, request: TaskAbortRequest) -> None:
        self.orchestrator.cancel(request.taskId, 'aborted by scheduler')

    async def _on_dispatch(self, message: AbstractIncomingMessage):
        if self._closed:
            await message.reject(requeue=True)
            return

        async with message.process(requeue=True):
            task_id = message.body.decode('utf-8')
            self._idle.clear()
            try:
                self.system_config = await self.scheduler.get_system_config(
                    SystemConfigRequest(workerType=self.worker_type)
                )
                await self.orchestrator.run(task_id)
            finally:
                self._idle.set()

    async def _signal_handler(self):
        self._closed = True

        if self.mq_conn is None or self.mq_conn.is_closed:
            raise SystemExit(0)

        # the running task ends as failed; no yielding back to pending;
        for task_id in self.orchestrator.running_task_ids():
            self.orchestrator.cancel(task_id, 'worker going offline')
        await self._idle.wait()

        await self.report_system_log(f'Worker {self.worker_type} at {self.worker_id} exiting')
        await self.mq_conn.close()
        self._blocker_lock.release()

    async def _start(self):
        from .orchestrator import TaskOrchestrator

        self.mq_conn = await connect_robust(self._conn_url)

        self.scheduler = SchedulerClient(self.mq_conn)
        self.orchestrator = TaskOrchestrator(
            self.scheduler,
            self.worker_id,
            self._create_task,
            self.report_task_log
        )
        self._abort_task = RpcServer[TaskAbortRequest, None](
            self.mq_conn,
            worker_control_queue(self.worker_id, 'abort_task'),
            self.abort_task,
            TaskAbortRequest
        )

        asyncio.get_running_loop().add_signal_handler(
            SIGTERM,
            lambda: asyncio.create_task(self._signal_handler())
        )

        await self.scheduler.start()
        await self._abort_task.start()

        self.log_chan = await self.mq_conn.channel()
        self.task_chan = await self.mq_conn.channel()
        await self.task_chan.set_qos(prefetch_count=1)
        task_queue = await self.task_chan.declare_queue(self.worker_type, durable=True)
        await task_queue.consume(self._on_dispatch)

        await self.report_system_log(f'Worker {self.worker_type} at {self.worker_id} joined')

        await self._blocker_lock.acquire()

    def run(self):
        asyncio.run(self._start())
