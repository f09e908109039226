# workspace.py
import os, re
from pydantic import BaseModel, ConfigDict

from .errors import DirectoryCreateError
from .models import TaskIdRegex
from .utils import run_async

IMAGE_NAME = 'debian.img'
TRIGGER_NAME = 'bug.c'
VMCORE_NAME = 'vmcore'
KERNEL_IMAGE_RELPATH = os.path.join('arch', 'x86_64', 'boot', 'bzImage')

_REVISION = re.compile(r'^[0-9A-Za-z._-]+$')

class WorkspacePaths(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    revision: str
    work_dir: str
    build_dir: str
    install_dir: str
    src_dir: str
    image_dir: str
    image_path: str
    mount_dir: str
    log_path: str
    trigger_path: str
    kernel_image: str

def workspace_paths(root: str, task_id: str, revision: str) -> WorkspacePaths:
    if re.match(TaskIdRegex, task_id) is None:
        raise ValueError(f'Invalid task id \"{task_id}\"')
    if _REVISION.match(revision) is None or revision in ('.', '..'):
        raise ValueError(f'Invalid revision \"{revision}\"')
    work_dir = os.path.join(os.path.abspath(root), task_id)
    build_dir = os.path.join(work_dir, 'build')
    image_dir = os.path.join(work_dir, 'image')
    return WorkspacePaths(
        task_id=task_id,
        revision=revision,
        work_dir=work_dir,
        build_dir=build_dir,
        install_dir=os.path.join(work_dir, 'install'),
        src_dir=os.path.join(work_dir, f'linux-{revision}'),
        image_dir=image_dir,
        image_path=os.path.join(image_dir, IMAGE_NAME),
        mount_dir=os.path.join(image_dir, 'mnt'),
        log_path=os.path.join(image_dir, f'{task_id}.log'),
        trigger_path=os.path.join(work_dir, TRIGGER_NAME),
        kernel_image=os.path.join(build_dir, KERNEL_IMAGE_RELPATH)
    )

def ensure_directory(path: str) -> bool:
    """Create `path` with parents; returns False if it already existed."""
    if os.path.isdir(path):
        return False
    try:
        os.makedirs(path)
    except FileExistsError:
        # lost a race with another creator, or a non-directory is in the way;
        if os.path.isdir(path):
            return False
        raise DirectoryCreateError(f'{path} exists and is not a directory')
    except OSError as e:
        raise DirectoryCreateError(f'{path}: {e.strerror}')
    return True

async def prepare_workspace(paths: WorkspacePaths) -> list[str]:
    created = []
    for path in (paths.work_dir, paths.build_dir, paths.install_dir, paths.image_dir):
        if await run_async(ensure_directory, path):
            created.append(path)
    return created
