from abc import ABC, abstractmethod

from .models import *

class AbstractTaskStore(ABC):
    """The part of the task store a worker depends on.

    `claim_task` is the only synchronization point between workers: it must
    move a task from pending to running as one atomic compare-and-set keyed
    on (taskId, status=pending). `finish_task` only touches running tasks
    owned by the requesting worker, so terminal statuses never regress.
    """

    @abstractmethod
    async def claim_task(self, request: ClaimRequest) -> ClaimReceipt:
        pass

    @abstractmethod
    async def finish_task(self, request: FinishRequest) -> FinishReceipt:
        pass
