from datetime import datetime

from typing import TYPE_CHECKING, Any, Dict
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, model_validator

if TYPE_CHECKING:
    from .crash_report import CrashReport

TaskIdRegex = '^[0-9A-Za-z_-]{1,64}$'
DEFAULT_GIT_URL = 'https://git.kernel.org/pub/scm/linux/kernel/git/torvalds/linux.git'

class TaskType(str, Enum):
    GetVmcore = 'get-vmcore'
    PatchApply = 'patch-apply'

class TaskStatus(str, Enum):
    Pending = 'pending'
    Running = 'running'
    Success = 'success'
    Failed = 'failed'

TERMINAL_STATUSES = (TaskStatus.Success, TaskStatus.Failed)

class SystemLog(BaseModel):
    timeStamp: datetime
    workerType: str
    workerId: str
    content: Any

class TaskLog(BaseModel):
    timeStamp: datetime
    taskId: str
    workerId: str
    content: Any

class TaskArgument(BaseModel):
    revision: str=Field(min_length=1)
    compiler: str='gcc-default'
    gitUrl: str=DEFAULT_GIT_URL
    # empty: make defconfig;
    kConfig: str=''
    patch: str=''
    reproducer: str=''

class Task(BaseModel):
    taskId: str=Field(pattern=TaskIdRegex)
    taskType: TaskType
    status: TaskStatus
    workerId: str=''
    result: str=''
    artifactPath: str=''
    artifactName: str=''
    createdTime: datetime
    startedTime: datetime | None=None
    finishedTime: datetime | None=None
    argument: TaskArgument

    @model_validator(mode='after')
    def check_timestamps(self):
        if (self.startedTime is None) != (self.status == TaskStatus.Pending):
            raise ValueError(f'startedTime does not agree with status {self.status.value}')
        if (self.finishedTime is None) == (self.status in TERMINAL_STATUSES):
            raise ValueError(f'finishedTime does not agree with status {self.status.value}')
        return self

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

class StorageProviderConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    providerType: str
    providerConfig: Dict[str, Any] | None=None

class SystemConfig(BaseModel):
    storage: SerializeAsAny[StorageProviderConfig]
    workerConfig: Dict[str, Any] | None=None
    deploymentName: str

# RESTful;

class TaskRequest(BaseModel):
    taskType: TaskType
    argument: TaskArgument
    taskId: str | None=Field(default=None, pattern=TaskIdRegex)

    @model_validator(mode='after')
    def check_patch(self):
        if self.taskType == TaskType.PatchApply and self.argument.patch == '':
            raise ValueError('patch-apply task requires a patch')
        return self

    @classmethod
    def from_crash_report(
        cls,
        report: 'CrashReport',
        reproducer: str,
        kconfig: str='',
        crash_index: int=0,
        apply_fix: bool=False
    ) -> 'TaskRequest':
        """Reproduce a crash at its kernel commit, or at the fix's parent with the fix applied."""
        from .crash_report import task_request_from_crash_report
        return task_request_from_crash_report(report, reproducer, kconfig, crash_index, apply_fix)

# RPC;

class SystemConfigRequest(BaseModel):
    workerType: str

class ClaimRequest(BaseModel):
    taskId: str
    workerId: str

class ClaimStatus(str, Enum):
    claimed = 'claimed'
    conflict = 'conflict'

class ClaimReceipt(BaseModel):
    status: ClaimStatus
    task: Task | None=None

class TaskOutcome(BaseModel):
    status: TaskStatus
    result: str=''
    artifactPath: str=''
    artifactName: str=''

    @model_validator(mode='after')
    def check_terminal(self):
        if self.status not in TERMINAL_STATUSES:
            raise ValueError('outcome must be terminal')
        return self

class FinishRequest(BaseModel):
    taskId: str
    workerId: str
    outcome: TaskOutcome

class FinishReceipt(BaseModel):
    accepted: bool
    task: Task | None=None

class TaskAbortRequest(BaseModel):
    taskId: str
