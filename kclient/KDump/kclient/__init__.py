"""KDump-Runner Client Library.

HTTP clients for the KDump-Runner scheduler, which builds kernels at a
given revision, injects a reproducer into a userspace image and collects
the resulting vmcore.

Main Components:
    kDumpClient: Synchronous HTTP client for the scheduler API
    kDumpAsyncClient: Asynchronous HTTP client for the scheduler API
    fetch_crash_artifacts: Download a syzbot crash's C reproducer and kernel config

Example:
    Submitting a crash reproduction:

    >>> from KDump.kclient import kDumpClient
    >>> from KDump.kcore import TaskRequest, TaskArgument, TaskType
    >>>
    >>> client = kDumpClient("http://localhost:8000")
    >>> task = client.create_task(TaskRequest(
    ...     taskType=TaskType.GetVmcore,
    ...     argument=TaskArgument(
    ...         revision="v6.8",
    ...         compiler="gcc-12",
    ...         reproducer="int main() { ... }"
    ...     )
    ... ))
    >>> client.get_task(task.taskId).status

    Submitting a syzbot bug export:

    >>> from KDump.kcore import load_crash_report
    >>> report = load_crash_report("0b6b2d6d6cefa8b462930e55be699efba635788f.json")
    >>> task = client.create_task_from_crash_report(report)
"""

from .kdump_client import (
    kDumpAsyncClient, kDumpClient, fetch_crash_artifacts, fetch_crash_artifacts_sync
)
