import uuid, asyncio, aiosqlite
from contextlib import asynccontextmanager
from KDump.kcore import *
from typing import Annotated
from fastapi import FastAPI, Query, Path, HTTPException
from .utils import SortingModes, MAX_PAGE_SIZE
from .config import SchedulerConfig
from pydantic_core import from_json, to_json
from datetime import UTC

TASK_COLUMNS = (
    'taskId', 'taskType', '`status`', 'workerId', 'result',
    'artifactPath', 'artifactName', 'createdTime', 'startedTime',
    'finishedTime', 'argument'
)

TaskTupleToModel = lambda taskTuple: Task(
    taskId=taskTuple[0],
    taskType=taskTuple[1],
    status=taskTuple[2],
    workerId=taskTuple[3],
    result=taskTuple[4],
    artifactPath=taskTuple[5],
    artifactName=taskTuple[6],
    createdTime=taskTuple[7],
    startedTime=taskTuple[8],
    finishedTime=taskTuple[9],
    argument=TaskArgument.model_validate_json(taskTuple[10])
)

TaskLogTupleToModel = lambda taskLogTuple: TaskLog(
    timeStamp=taskLogTuple[0],
    taskId=taskLogTuple[1],
    workerId=taskLogTuple[2],
    content=from_json(taskLogTuple[3])
)

SystemLogTupleToModel = lambda systemLogTuple: SystemLog(
    timeStamp=systemLogTuple[0],
    workerType=systemLogTuple[1],
    workerId=systemLogTuple[2],
    content=from_json(systemLogTuple[3])
)

def _ts():
    return utc_now().isoformat()

class SchedulerBackend(AbstractTaskStore):

    def __init__(self, config: SchedulerConfig):
        self.config = config
        self._backend_conn_str = config.dbPath
        self._db_conn: aiosqlite.Connection = None
        self._write_lock = asyncio.Lock()

    async def _create_db(self):
        async with self._db_conn.cursor() as cur:
            await cur.executescript('\n'.join((
                "CREATE TABLE task (",
                "taskId TEXT PRIMARY KEY,",
                "taskType TEXT,",
                "`status` TEXT,",
                "workerId TEXT,",
                "result TEXT,",
                "artifactPath TEXT,",
                "artifactName TEXT,",
                "createdTime TEXT,",
                "startedTime TEXT,",
                "finishedTime TEXT,",
                "argument TEXT",
                ");"
            )))
            await cur.executescript('\n'.join((
                "CREATE TABLE taskLog (",
                "timeStamp TEXT,",
                "taskId TEXT,",
                "workerId TEXT,",
                "content TEXT",
                ");"
            )))
            await cur.executescript('\n'.join((
                "CREATE TABLE systemLog (",
                "timeStamp TEXT,",
                "workerType TEXT,",
                "workerId TEXT,",
                "content TEXT",
                ");"
            )))
            await cur.executescript("CREATE INDEX taskCreatedTimeIndex ON task (createdTime);")
            await cur.executescript("CREATE INDEX taskLogTSIndex ON taskLog (timeStamp);")
            await cur.executescript("CREATE INDEX taskLogIdIndex ON taskLog (taskId);")
            await cur.executescript("CREATE INDEX systemLogTSIndex ON systemLog (timeStamp);")

    @asynccontextmanager
    async def _transaction(self):
        # one writer per connection; IMMEDIATE takes the database write lock first;
        async with self._write_lock:
            await self._db_conn.execute('BEGIN IMMEDIATE;')
            try:
                async with self._db_conn.cursor() as cur:
                    yield cur
            except BaseException:
                await self._db_conn.execute('ROLLBACK;')
                raise
            await self._db_conn.execute('COMMIT;')

    async def get_task(self, taskId: str) -> Task | None:
        async with self._db_conn.cursor() as cur:
            await cur.execute(
                f"SELECT {', '.join(TASK_COLUMNS)} FROM task WHERE taskId=?;",
                (taskId, )
            )
            rows = await cur.fetchall()
        if len(rows) == 0:
            return None
        return TaskTupleToModel(rows[0])

    async def list_tasks(
        self,
        skip: int=0,
        pageSize: int=20,
        sortBy: SortingModes='createdTime',
        status: TaskStatus | None=None
    ) -> PaginatedResult[Task]:
        where, params = '', ()
        if status is not None:
            where, params = 'WHERE `status`=?', (status.value, )
        async with self._db_conn.cursor() as cur:
            await cur.execute(f"SELECT COUNT(*) FROM task {where};", params)
            total = (await cur.fetchall())[0][0]
            await cur.execute(
                f"SELECT {', '.join(TASK_COLUMNS)} FROM task {where} \
                ORDER BY {sortBy} DESC LIMIT ? OFFSET ?;",
                params + (pageSize, skip)
            )
            tasks = list[Task](map(TaskTupleToModel, await cur.fetchall()))
        return PaginatedResult[Task](
            page=tasks,
            pageSize=len(tasks),
            offsetNextPage=skip + len(tasks),
            total=total
        )

    async def new_task(self, request: TaskRequest) -> Task:
        task_id = request.taskId if request.taskId is not None else uuid.uuid4().hex
        try:
            async with self._transaction() as cur:
                await cur.execute(
                    'INSERT INTO task( \
                        taskId, taskType, `status`, workerId, result, \
                        artifactPath, artifactName, createdTime, \
                        startedTime, finishedTime, argument \
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?);',
                    (
                        task_id, request.taskType.value, TaskStatus.Pending.value,
                        '', '', '', '', _ts(), request.argument.model_dump_json()
                    )
                )
        except aiosqlite.IntegrityError:
            raise HTTPException(409, f'Task {task_id} already exists')
        return await self.get_task(task_id)

    async def claim_task(self, request: ClaimRequest) -> ClaimReceipt:
        async with self._transaction() as cur:
            await cur.execute(
                "UPDATE task SET `status`=?, workerId=?, startedTime=? \
                WHERE taskId=? AND `status`=?;",
                (
                    TaskStatus.Running.value, request.workerId, _ts(),
                    request.taskId, TaskStatus.Pending.value
                )
            )
            claimed = (cur.rowcount == 1)
        return ClaimReceipt(
            status=ClaimStatus.claimed if claimed else ClaimStatus.conflict,
            task=await self.get_task(request.taskId)
        )

    async def finish_task(self, request: FinishRequest) -> FinishReceipt:
        outcome = request.outcome
        succeeded = outcome.status == TaskStatus.Success
        async with self._transaction() as cur:
            await cur.execute(
                "UPDATE task SET `status`=?, result=?, artifactPath=?, \
                artifactName=?, finishedTime=? \
                WHERE taskId=? AND `status`=? AND workerId=?;",
                (
                    outcome.status.value, outcome.result,
                    outcome.artifactPath if succeeded else '',
                    outcome.artifactName if succeeded else '',
                    _ts(), request.taskId, TaskStatus.Running.value,
                    request.workerId
                )
            )
            accepted = (cur.rowcount == 1)
        return FinishReceipt(accepted=accepted, task=await self.get_task(request.taskId))

    async def abort_task(self, taskId: str) -> bool:
        """Fail a task that no worker has claimed yet; False otherwise."""
        ts = _ts()
        async with self._transaction() as cur:
            await cur.execute(
                "UPDATE task SET `status`=?, result=?, startedTime=?, finishedTime=? \
                WHERE taskId=? AND `status`=?;",
                (
                    TaskStatus.Failed.value, AbortedCode, ts, ts,
                    taskId, TaskStatus.Pending.value
                )
            )
            return (cur.rowcount == 1)

    async def insert_system_log(self, log: SystemLog):
        async with self._transaction() as cur:
            await cur.execute(
                "INSERT INTO systemLog( \
                    timeStamp, workerType, \
                    workerId, content \
                ) VALUES(?, ?, ?, ?) \
                ;",
                (log.timeStamp.astimezone(UTC).isoformat(), log.workerType, log.workerId, to_json(log.content))
            )

    async def insert_task_log(self, log: TaskLog):
        async with self._transaction() as cur:
            await cur.execute(
                "INSERT INTO taskLog( \
                    timeStamp, taskId, \
                    workerId, content \
                ) VALUES(?, ?, ?, ?) \
                ;",
                (log.timeStamp.astimezone(UTC).isoformat(), log.taskId, log.workerId, to_json(log.content))
            )

    async def get_task_logs(self, taskId: str, skip: int=0, pageSize: int=20) -> PaginatedResult[TaskLog]:
        async with self._db_conn.cursor() as cur:
            await cur.execute(
                "SELECT COUNT(*) FROM taskLog WHERE taskId=?",
                (taskId, )
            )
            total = (await cur.fetchall())[0][0]
            await cur.execute(
                "SELECT * FROM taskLog WHERE taskId=? ORDER BY timeStamp DESC LIMIT ? OFFSET ?",
                (taskId, pageSize, skip)
            )
            logs = list[TaskLog](map(TaskLogTupleToModel, await cur.fetchall()))
        return PaginatedResult[TaskLog](
            page=logs,
            pageSize=len(logs),
            offsetNextPage=skip + len(logs),
            total=total
        )

    async def get_system_logs(self, skip: int=0, pageSize: int=20) -> PaginatedResult[SystemLog]:
        async with self._db_conn.cursor() as cur:
            await cur.execute("SELECT COUNT(*) FROM systemLog")
            total = (await cur.fetchall())[0][0]
            await cur.execute(
                "SELECT * FROM systemLog ORDER BY timeStamp DESC LIMIT ? OFFSET ?;",
                (pageSize, skip)
            )
            logs = list[SystemLog](map(SystemLogTupleToModel, await cur.fetchall()))
        return PaginatedResult[SystemLog](
            page=logs,
            pageSize=len(logs),
            offsetNextPage=skip + len(logs),
            total=total
        )

    async def mount_apis(self, app: FastAPI):
        @app.get('/tasks')
        async def get_tasks(
            sortBy: Annotated[SortingModes, Query()]='createdTime',
            status: Annotated[TaskStatus | None, Query()]=None,
            skip: Annotated[int, Query(ge=0)]=0,
            pageSize: Annotated[int, Query(ge=0, le=MAX_PAGE_SIZE)]=20
        ) -> PaginatedResult[Task]:
            return await self.list_tasks(skip, pageSize, sortBy, status)

        @app.get('/tasks/{taskId}')
        async def get_task(
            taskId: Annotated[str, Path(pattern=TaskIdRegex)]
        ) -> Task | None:
            return await self.get_task(taskId)

        @app.get('/tasks/{taskId}/log')
        async def get_task_log(
            taskId: Annotated[str, Path(pattern=TaskIdRegex)],
            skip: Annotated[int, Query(ge=0)]=0,
            pageSize: Annotated[int, Query(ge=0, le=MAX_PAGE_SIZE)]=20
        ) -> PaginatedResult[TaskLog]:
            return await self.get_task_logs(taskId, skip, pageSize)

        @app.get('/system/displays/systemLog')
        async def display_system_log(
            skip: Annotated[int, Query(ge=0)]=0,
            pageSize: Annotated[int, Query(ge=0, le=MAX_PAGE_SIZE)]=20
        ) -> PaginatedResult[SystemLog]:
            return await self.get_system_logs(skip, pageSize)

    async def start(self):
        # transactions are issued explicitly;
        self._db_conn = await aiosqlite.connect(self._backend_conn_str, isolation_level=None)
        async with self._db_conn.cursor() as cur:
            await cur.execute(
                'SELECT name FROM sqlite_master WHERE type=? AND name=?;',
                ('table', 'task')
            )
            result = await cur.fetchall()
        # if it's necessary to build the table structures;
        if len(result) == 0:
            await self._create_db()

    async def stop(self):
        await self._db_conn.close()
