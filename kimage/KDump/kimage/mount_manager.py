# mount_manager.py
import os, asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from KDump.kcore import TaskExceptionError, ImageNotFound, MountFailed, UnmountFailed, ensure_directory
from KDump.kcore.utils import Reporter, discard_report, run_async

from .loop import AbstractMounter, LoopMounter

_T = TypeVar('_T')

# mount directories with a live session in this process;
_active_sessions: set[str] = set()

class MountSession:

    def __init__(self, image_path: str, root: str):
        self.image_path = image_path
        self.root = root

    def path(self, *parts: str) -> str:
        return os.path.join(self.root, *parts)

async def _unmount(mounter: AbstractMounter, mount_dir: str, report: Reporter):
    try:
        await run_async(mounter.umount, mount_dir)
    except UnmountFailed as e:
        await report(f'Unmount failed, left in place: {e.describe()}')

async def _undo_mount(mount: asyncio.Future, mounter: AbstractMounter, mount_dir: str, report: Reporter):
    # the executor finishes a mount even when its caller is cancelled;
    try:
        await mount
    except TaskExceptionError as e:
        await report(f'Mount interrupted: {e.describe()}')
        return
    await _unmount(mounter, mount_dir, report)

async def _mount(mounter: AbstractMounter, image_path: str, mount_dir: str, report: Reporter):
    mount = asyncio.ensure_future(run_async(mounter.mount, image_path, mount_dir))
    try:
        await asyncio.shield(mount)
    except asyncio.CancelledError:
        await asyncio.shield(_undo_mount(mount, mounter, mount_dir, report))
        raise

@asynccontextmanager
async def mount_session(
    image_path: str,
    mount_dir: str,
    mounter: AbstractMounter | None=None,
    report: Reporter | None=None
) -> AsyncIterator[MountSession]:
    """Loop-mount `image_path` at `mount_dir` for the body of the `async with`.

    The image is unmounted on every exit path, cancellation included, and an
    unmount failure is reported without replacing the body's result or
    error. A stale mount left at `mount_dir` by an earlier run is removed
    first. `MountFailed` is never retried.
    """
    mounter = LoopMounter() if mounter is None else mounter
    report = discard_report if report is None else report
    mount_dir = os.path.abspath(mount_dir)

    if not await run_async(os.path.isfile, image_path):
        raise ImageNotFound(image_path)
    if mount_dir in _active_sessions:
        raise MountFailed(f'{mount_dir} is held by another session')

    _active_sessions.add(mount_dir)
    try:
        await run_async(ensure_directory, mount_dir)
        if await run_async(mounter.is_mounted, mount_dir):
            await report(f'Stale mount at {mount_dir}, unmounting')
            try:
                await asyncio.shield(run_async(mounter.umount, mount_dir))
            except UnmountFailed as e:
                raise MountFailed(f'stale mount could not be removed: {e.content}')

        await _mount(mounter, image_path, mount_dir, report)
        try:
            await report(f'Mounted {image_path}')
            yield MountSession(image_path, mount_dir)
        finally:
            await asyncio.shield(_unmount(mounter, mount_dir, report))
    finally:
        _active_sessions.discard(mount_dir)

async def with_mount(
    image_path: str,
    mount_dir: str,
    body: Callable[[str], Awaitable[_T]],
    mounter: AbstractMounter | None=None,
    report: Reporter | None=None
) -> _T:
    async with mount_session(image_path, mount_dir, mounter, report) as session:
        return await body(session.root)
