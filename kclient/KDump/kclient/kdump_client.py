"""KDump-Runner HTTP Client Library.

Synchronous and asynchronous HTTP clients for the KDump-Runner scheduler
API: task submission, inspection, abort and retry, task logs, and system
information.

Classes:
    kDumpAsyncClient: Async HTTP client
    kDumpClient: Synchronous HTTP client

Example:
    Async client usage:

    >>> async with kDumpAsyncClient("http://localhost:8000") as client:
    ...     task = await client.create_task(task_request)
    ...     task = await client.get_task(task.taskId)
    ...     logs = await client.get_task_log(task.taskId)

    Sync client usage:

    >>> client = kDumpClient("http://localhost:8000")
    >>> task = client.create_task(task_request)
    >>> client.close()
"""

import httpx
from typing import Optional
from KDump.kcore import (
    Task, TaskRequest, TaskLog, TaskStatus, SystemLog, PaginatedResult,
    Crash, CrashReport, artifact_url
)

def _task_or_none(response: httpx.Response) -> Optional[Task]:
    if response.status_code == 404:
        return None
    response.raise_for_status()
    if response.json() is None:
        return None
    return Task.model_validate_json(response.text)

def _list_params(sort_by: str, skip: int, page_size: int, status: Optional[TaskStatus]) -> dict:
    params = {'sortBy': sort_by, 'skip': skip, 'pageSize': page_size}
    if status is not None:
        params['status'] = TaskStatus(status).value
    return params

def _artifact_text(response: httpx.Response) -> str:
    response.raise_for_status()
    return response.text

def _require_reproducer(crash: Crash):
    if crash.cReproducer == '':
        raise ValueError(f'crash {crash.title!r} has no C reproducer')

async def fetch_crash_artifacts(crash: Crash, client: httpx.AsyncClient) -> tuple[str, str]:
    """Download a crash's C reproducer and kernel config from syzbot.

    Returns:
        (reproducer, kconfig); kconfig is empty when the crash links none
    """
    _require_reproducer(crash)
    reproducer = _artifact_text(await client.get(artifact_url(crash.cReproducer)))
    if crash.kernelConfig == '':
        return reproducer, ''
    return reproducer, _artifact_text(await client.get(artifact_url(crash.kernelConfig)))

def fetch_crash_artifacts_sync(crash: Crash, client: httpx.Client) -> tuple[str, str]:
    _require_reproducer(crash)
    reproducer = _artifact_text(client.get(artifact_url(crash.cReproducer)))
    if crash.kernelConfig == '':
        return reproducer, ''
    return reproducer, _artifact_text(client.get(artifact_url(crash.kernelConfig)))

class kDumpAsyncClient:
    """Asynchronous HTTP client for the KDump-Runner scheduler API.

    All methods are coroutines that must be awaited.

    Attributes:
        _client: Underlying httpx AsyncClient instance

    Example:
        >>> client = kDumpAsyncClient("http://localhost:8000")
        >>> try:
        ...     task = await client.create_task(task_request)
        ...     logs = await client.get_task_log(task.taskId, page_size=50)
        ... finally:
        ...     await client.close()
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_connections=5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """Initialize the async client.

        Args:
            base_url: Base URL of the scheduler (e.g., 'http://localhost:8000')
            timeout: Request timeout in seconds (default: 30.0)
            max_connections: Maximum concurrent connections (default: 5)
            transport: Optional httpx transport, e.g. an ASGI or mock transport
        """
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            timeout=timeout,
            limits=httpx.Limits(max_connections=max_connections),
            transport=transport
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP client and release its connections."""
        await self._client.aclose()

    # Task Management

    async def get_tasks(
        self,
        sort_by: str = 'createdTime',
        skip: int = 0,
        page_size: int = 20,
        status: Optional[TaskStatus] = None
    ) -> PaginatedResult[Task]:
        """Get a page of tasks, newest first.

        Args:
            sort_by: Sort field ('createdTime', 'startedTime', 'finishedTime')
            skip: Number of records to skip for pagination
            page_size: Number of records per page (max: 500)
            status: Only return tasks in this status

        Returns:
            PaginatedResult of Task with the total count

        Example:
            >>> result = await client.get_tasks(status=TaskStatus.Failed)
            >>> for task in result.page:
            ...     print(task.taskId, task.result)
        """
        response = await self._client.get(
            "/tasks",
            params=_list_params(sort_by, skip, page_size, status)
        )
        response.raise_for_status()
        return PaginatedResult[Task].model_validate_json(response.text)

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Get a task by id.

        Args:
            task_id: The task ID to query

        Returns:
            The Task, or None if it does not exist

        Example:
            >>> task = await client.get_task("abc123")
            >>> if task.status == TaskStatus.Success and task.artifactPath:
            ...     print("vmcore at", task.artifactPath)
        """
        return _task_or_none(await self._client.get(f"/tasks/{task_id}"))

    async def create_task(self, task_request: TaskRequest) -> Task:
        """Submit a new task; it starts out pending.

        Args:
            task_request: Task type and argument, optionally with a chosen task id

        Returns:
            The created Task
        """
        response = await self._client.post(
            "/newTask",
            json=task_request.model_dump(mode='json', exclude_none=True)
        )
        response.raise_for_status()
        return Task.model_validate_json(response.text)

    async def create_task_from_crash_report(
        self,
        report: CrashReport,
        crash_index: int = 0,
        apply_fix: bool = False,
        fetcher: Optional[httpx.AsyncClient] = None
    ) -> Task:
        """Submit a task reproducing one crash of a syzbot bug report.

        The crash's C reproducer and kernel config are downloaded first;
        the revision, repository and compiler come from the report.

        Args:
            report: Parsed syzbot bug export
            crash_index: Which of the report's crashes to reproduce
            apply_fix: Build the fix's parent commit with the report's patch applied
            fetcher: httpx client used for the downloads (default: a fresh one)

        Returns:
            The created Task

        Example:
            >>> report = load_crash_report("0b6b2d6d6cefa8b4.json")
            >>> task = await client.create_task_from_crash_report(report)
        """
        crash = report.crash(crash_index)
        if fetcher is None:
            async with httpx.AsyncClient(timeout=self._client.timeout) as fetcher:
                reproducer, kconfig = await fetch_crash_artifacts(crash, fetcher)
        else:
            reproducer, kconfig = await fetch_crash_artifacts(crash, fetcher)
        return await self.create_task(TaskRequest.from_crash_report(
            report, reproducer, kconfig, crash_index, apply_fix
        ))

    async def abort_task(self, task_id: str) -> None:
        """Abort a task.

        A pending task fails immediately with cause `Aborted`; a running task
        is cancelled on its worker and fails with cause `Cancelled`.

        Args:
            task_id: The task ID to abort
        """
        response = await self._client.post(f"/tasks/{task_id}/abort")
        response.raise_for_status()

    async def retry_task(self, task_id: str) -> Task:
        """Submit a finished task again as a new task with a new id.

        Args:
            task_id: The finished task to copy

        Returns:
            The new pending Task
        """
        response = await self._client.post(f"/tasks/{task_id}/retry")
        response.raise_for_status()
        return Task.model_validate_json(response.text)

    # Task Logs

    async def get_task_log(
        self,
        task_id: str,
        skip: int = 0,
        page_size: int = 20
    ) -> PaginatedResult[TaskLog]:
        """Get a page of a task's log, newest first.

        Args:
            task_id: The task ID
            skip: Number of records to skip for pagination
            page_size: Number of records per page (max: 500)
        """
        response = await self._client.get(
            f"/tasks/{task_id}/log",
            params={'skip': skip, 'pageSize': page_size}
        )
        response.raise_for_status()
        return PaginatedResult[TaskLog].model_validate_json(response.text)

    # System

    async def get_system_log(self, skip: int = 0, page_size: int = 20) -> PaginatedResult[SystemLog]:
        """Get a page of worker join/leave records, newest first."""
        response = await self._client.get(
            "/system/displays/systemLog",
            params={'skip': skip, 'pageSize': page_size}
        )
        response.raise_for_status()
        return PaginatedResult[SystemLog].model_validate_json(response.text)

    async def get_system_info(self) -> dict:
        """Get deployment information, e.g. `deploymentName`."""
        response = await self._client.get("/system/info")
        response.raise_for_status()
        return response.json()

class kDumpClient:
    """Synchronous HTTP client for the KDump-Runner scheduler API.

    A blocking version of kDumpAsyncClient for non-async contexts.

    Attributes:
        _client: Underlying httpx Client instance

    Example:
        >>> client = kDumpClient("http://localhost:8000")
        >>> try:
        ...     task = client.create_task(task_request)
        ...     logs = client.get_task_log(task.taskId, page_size=50)
        ... finally:
        ...     client.close()
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        """Initialize the synchronous client.

        Args:
            base_url: Base URL of the scheduler (e.g., 'http://localhost:8000')
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport, e.g. a mock transport
        """
        self._client = httpx.Client(
            base_url=base_url.rstrip('/'),
            timeout=timeout,
            limits=httpx.Limits(max_connections=5),
            transport=transport
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        """Close the HTTP client and release its connections."""
        self._client.close()

    # Task Management

    def get_tasks(
        self,
        sort_by: str = 'createdTime',
        skip: int = 0,
        page_size: int = 20,
        status: Optional[TaskStatus] = None
    ) -> PaginatedResult[Task]:
        response = self._client.get(
            "/tasks",
            params=_list_params(sort_by, skip, page_size, status)
        )
        response.raise_for_status()
        return PaginatedResult[Task].model_validate_json(response.text)

    def get_task(self, task_id: str) -> Optional[Task]:
        return _task_or_none(self._client.get(f"/tasks/{task_id}"))

    def create_task(self, task_request: TaskRequest) -> Task:
        response = self._client.post(
            "/newTask",
            json=task_request.model_dump(mode='json', exclude_none=True)
        )
        response.raise_for_status()
        return Task.model_validate_json(response.text)

    def create_task_from_crash_report(
        self,
        report: CrashReport,
        crash_index: int = 0,
        apply_fix: bool = False,
        fetcher: Optional[httpx.Client] = None
    ) -> Task:
        crash = report.crash(crash_index)
        if fetcher is None:
            with httpx.Client(timeout=self._client.timeout) as fetcher:
                reproducer, kconfig = fetch_crash_artifacts_sync(crash, fetcher)
        else:
            reproducer, kconfig = fetch_crash_artifacts_sync(crash, fetcher)
        return self.create_task(TaskRequest.from_crash_report(
            report, reproducer, kconfig, crash_index, apply_fix
        ))

    def abort_task(self, task_id: str) -> None:
        response = self._client.post(f"/tasks/{task_id}/abort")
        response.raise_for_status()

    def retry_task(self, task_id: str) -> Task:
        response = self._client.post(f"/tasks/{task_id}/retry")
        response.raise_for_status()
        return Task.model_validate_json(response.text)

    # Task Logs

    def get_task_log(
        self,
        task_id: str,
        skip: int = 0,
        page_size: int = 20
    ) -> PaginatedResult[TaskLog]:
        response = self._client.get(
            f"/tasks/{task_id}/log",
            params={'skip': skip, 'pageSize': page_size}
        )
        response.raise_for_status()
        return PaginatedResult[TaskLog].model_validate_json(response.text)

    # System

    def get_system_log(self, skip: int = 0, page_size: int = 20) -> PaginatedResult[SystemLog]:
        response = self._client.get(
            "/system/displays/systemLog",
            params={'skip': skip, 'pageSize': page_size}
        )
        response.raise_for_status()
        return PaginatedResult[SystemLog].model_validate_json(response.text)

    def get_system_info(self) -> dict:
        response = self._client.get("/system/info")
        response.raise_for_status()
        return response.json()
