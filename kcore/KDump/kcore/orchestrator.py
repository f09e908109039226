import traceback
from typing import Any, Awaitable, Callable, Dict

from .models import *
from .errors import InternalErrorCode
from .store import AbstractTaskStore
from .utils import get_type_fullname
from .worker import TaskBase

TaskFactory = Callable[['TaskOrchestrator', Task], TaskBase]
TaskLogReporter = Callable[[str, Any], Awaitable[None]]

class TaskOrchestrator:
    """Drives tasks through pending -> running -> success | failed.

    The claim is delegated to the store's compare-and-set; everything after a
    successful claim ends in exactly one `finish_task` call. The outcome comes
    from `TaskBase.run`, or is an internal error when the task's pipeline
    could not be built at all.
    """

    def __init__(
        self,
        store: AbstractTaskStore,
        worker_id: str,
        task_factory: TaskFactory,
        reporter: TaskLogReporter | None=None
    ):
        self.store = store
        self.worker_id = worker_id
        self._task_factory = task_factory
        self._reporter = reporter
        self._running: Dict[str, TaskBase] = {}

    async def report_task_log(self, task_id: str, message):
        if self._reporter is not None:
            await self._reporter(task_id, message)

    async def claim(self, task_id: str) -> ClaimReceipt:
        return await self.store.claim_task(ClaimRequest(taskId=task_id, workerId=self.worker_id))

    async def _execute(self, task: Task) -> TaskOutcome:
        try:
            task_base = self._task_factory(self, task)
        except Exception as e:
            await self.report_task_log(task.taskId, traceback.format_exc())
            return TaskOutcome(
                status=TaskStatus.Failed,
                result=f'{InternalErrorCode}: {get_type_fullname(type(e))}: {e}'
            )

        self._running[task.taskId] = task_base
        try:
            return await task_base.run()
        finally:
            self._running.pop(task.taskId, None)

    async def run(self, task_id: str) -> Task | None:
        receipt = await self.claim(task_id)
        if receipt.status == ClaimStatus.conflict:
            await self.report_task_log(task_id, f'Task already claimed, skipped by {self.worker_id}')
            return None

        await self.report_task_log(task_id, f'Task claimed by {self.worker_id}')
        outcome = await self._execute(receipt.task)

        finish = await self.store.finish_task(FinishRequest(
            taskId=task_id,
            workerId=self.worker_id,
            outcome=outcome
        ))
        if not finish.accepted:
            await self.report_task_log(task_id, f'Outcome rejected by the store: {outcome.status.value}')
        else:
            await self.report_task_log(task_id, f'Task finished: {outcome.status.value} {outcome.result}'.rstrip())
        return finish.task

    def running_task_ids(self) -> list[str]:
        return list(self._running)

    def cancel(self, task_id: str, reason: str | None=None) -> bool:
        task_base = self._running.get(task_id)
        if task_base is None or task_base.asyncio_task is None:
            return False
        return task_base.asyncio_task.cancel(reason)
