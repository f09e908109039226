# extractor.py
import os, shutil
from pydantic import BaseModel

from KDump.kcore import (
    WorkspacePaths, BuildFailed, HeaderCopyFailed, TriggerCopyFailed,
    VMCORE_NAME, ensure_directory
)
from KDump.kcore.utils import Reporter, discard_report, run_async

from .loop import AbstractMounter
from .mount_manager import with_mount

HEADER_DIRS = ('asm', 'linux')
VMCORE_RELPATH = os.path.join('var', 'crash', VMCORE_NAME)
WORLD_READABLE = 0o644

class ExtractionReport(BaseModel):
    vmcorePath: str | None=None
    logPath: str | None=None

def _remove(path: str):
    if os.path.islink(path) or os.path.isfile(path):
        os.remove(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)

def inject_headers(root: str, install_dir: str):
    sources = [os.path.join(install_dir, 'include', name) for name in HEADER_DIRS]
    for src in sources:
        if not os.path.isdir(src):
            raise HeaderCopyFailed(f'{src} is missing; headers_install has not run')

    include_dir = os.path.join(root, 'usr', 'include')
    try:
        os.makedirs(include_dir, exist_ok=True)
        for name, src in zip(HEADER_DIRS, sources):
            dst = os.path.join(include_dir, name)
            _remove(dst)
            shutil.copytree(src, dst, symlinks=True)
    except OSError as e:
        raise HeaderCopyFailed(f'{include_dir}: {e}')

def inject_trigger(root: str, trigger_path: str) -> str:
    if not os.path.isfile(trigger_path):
        raise TriggerCopyFailed(f'{trigger_path} is missing')
    home = os.path.join(root, 'root')
    try:
        os.makedirs(home, exist_ok=True)
        return shutil.copy(trigger_path, home)
    except OSError as e:
        raise TriggerCopyFailed(f'{home}: {e}')

def stage_kernel_image(paths: WorkspacePaths) -> str:
    if not os.path.isfile(paths.kernel_image):
        raise BuildFailed(f'{paths.kernel_image} was not produced')
    return shutil.copy(paths.kernel_image, paths.image_dir)

def relocate_vmcore(root: str, build_dir: str) -> str | None:
    src = os.path.join(root, VMCORE_RELPATH)
    dst = os.path.join(build_dir, VMCORE_NAME)
    if not os.path.isfile(src):
        # relocated by an earlier run;
        return dst if os.path.isfile(dst) else None
    os.chmod(src, WORLD_READABLE)
    shutil.move(src, dst)
    os.chmod(dst, WORLD_READABLE)
    return dst

def relocate_log(log_path: str, build_dir: str) -> str | None:
    dst = os.path.join(build_dir, os.path.basename(log_path))
    if not os.path.isfile(log_path):
        return dst if os.path.isfile(dst) else None
    shutil.move(log_path, dst)
    return dst

async def mount_and_inject(
    paths: WorkspacePaths,
    mounter: AbstractMounter | None=None,
    report: Reporter | None=None
) -> str:
    """Inject headers and the trigger into the task's image, then stage the kernel next to it."""
    report = discard_report if report is None else report

    async def body(root: str):
        await run_async(inject_headers, root, paths.install_dir)
        await report('Headers injected')
        await run_async(inject_trigger, root, paths.trigger_path)
        await report('Trigger injected')

    await with_mount(paths.image_path, paths.mount_dir, body, mounter, report)
    return await run_async(stage_kernel_image, paths)

async def extract_artifacts(
    paths: WorkspacePaths,
    mounter: AbstractMounter | None=None,
    report: Reporter | None=None
) -> ExtractionReport:
    report = discard_report if report is None else report
    await run_async(ensure_directory, paths.build_dir)

    async def body(root: str):
        return await run_async(relocate_vmcore, root, paths.build_dir)

    vmcore_path = await with_mount(paths.image_path, paths.mount_dir, body, mounter, report)
    if vmcore_path is None:
        await report('No vmcore in the image')
    else:
        await report(f'vmcore relocated to {vmcore_path}')

    log_path = await run_async(relocate_log, paths.log_path, paths.build_dir)
    if log_path is not None:
        await report(f'Log relocated to {log_path}')
    return ExtractionReport(vmcorePath=vmcore_path, logPath=log_path)
