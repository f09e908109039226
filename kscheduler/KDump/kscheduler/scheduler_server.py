from KDump.kcore import *
from typing import Annotated
from fastapi import FastAPI, Path, HTTPException
from aio_pika import Message
from aio_pika.abc import AbstractIncomingMessage
from .backend import SchedulerBackend

class SchedulerServer(SchedulerServerBase):

    def __init__(self, backend: SchedulerBackend):
        super(SchedulerServer, self).__init__()
        self._backend = backend
        self._worker_control: WorkerControl = None

    async def enqueue_task(self, task_id: str):
        await self._message_chan.default_exchange.publish(
            Message(body=task_id.encode('utf-8')),
            routing_key=REPRODUCER_QUEUE
        )

    async def get_system_config(self, request: SystemConfigRequest) -> SystemConfig:
        return SystemConfig(
            storage=self._backend.config.storage,
            workerConfig=self._backend.config.workerConfigs.get(request.workerType, None),
            deploymentName=self._backend.config.deploymentName
        )

    async def claim_task(self, request: ClaimRequest) -> ClaimReceipt:
        return await self._backend.claim_task(request)

    async def finish_task(self, request: FinishRequest) -> FinishReceipt:
        return await self._backend.finish_task(request)

    async def mount_apis(self, app: FastAPI):
        @app.post('/newTask')
        async def new_task(request: TaskRequest) -> Task:
            task = await self._backend.new_task(request)
            await self.enqueue_task(task.taskId)
            return task

        @app.post('/tasks/{taskId}/abort')
        async def abort_task(taskId: Annotated[str, Path(pattern=TaskIdRegex)]) -> None:
            task = await self._backend.get_task(taskId)
            if task is None:
                raise HTTPException(404, 'Task not found')
            if task.terminal:
                return
            if not await self._backend.abort_task(taskId):
                # claimed in the meantime; the worker owns it now;
                task = await self._backend.get_task(taskId)
                if task.status == TaskStatus.Running:
                    await self._worker_control.abort_task(
                        task.workerId,
                        TaskAbortRequest(taskId=taskId)
                    )

        @app.post('/tasks/{taskId}/retry')
        async def retry_task(taskId: Annotated[str, Path(pattern=TaskIdRegex)]) -> Task:
            task = await self._backend.get_task(taskId)
            if task is None:
                raise HTTPException(404, 'Task not found')
            if not task.terminal:
                raise HTTPException(400, 'Task needs to be finished')
            retried = await self._backend.new_task(TaskRequest(
                taskType=task.taskType,
                argument=task.argument
            ))
            await self.enqueue_task(retried.taskId)
            return retried

    async def _insert_system_log(self, message: AbstractIncomingMessage):
        async with message.process():
            await self._backend.insert_system_log(SystemLog.model_validate_json(message.body))

    async def _insert_task_log(self, message: AbstractIncomingMessage):
        async with message.process():
            await self._backend.insert_task_log(TaskLog.model_validate_json(message.body))

    async def start(self, mq_conn: AbstractRobustConnection):
        self._worker_control_chan = await mq_conn.channel()
        self._message_chan = await mq_conn.channel()
        await self._message_chan.declare_queue(REPRODUCER_QUEUE, durable=True)

        self._log_chan = await mq_conn.channel()
        self._system_log_queue = await self._log_chan.declare_queue(INSERT_SYSTEM_LOG, durable=True)
        self._task_log_queue = await self._log_chan.declare_queue(INSERT_TASK_LOG, durable=True)
        await self._system_log_queue.consume(self._insert_system_log)
        await self._task_log_queue.consume(self._insert_task_log)

        self._worker_control = WorkerControl(self._worker_control_chan)
        await self._worker_control.start()

        await super(SchedulerServer, self).start(mq_conn)
