import os, time, shutil, asyncio

from KDump.kcore import MountFailed, UnmountFailed, WorkspacePaths
from KDump.kbuilder import AbstractKernelBuilder, ToolchainDescriptor
from KDump.kimage import AbstractMounter
from KDump.kscheduler import SchedulerBackend

class FakeMounter(AbstractMounter):
    """Mount table kept in memory; an image's filesystem is the directory `<image>.fs`."""

    def __init__(self, fail_mount: bool=False, fail_umount: bool=False, delay: float=0):
        self.fail_mount = fail_mount
        self.fail_umount = fail_umount
        # seconds spent in mount and umount, like a slow loop device;
        self.delay = delay
        self.table: set[str] = set()
        self.sources: dict[str, str] = dict()
        self.mount_calls = 0
        self.umount_calls = 0

    @staticmethod
    def backing_dir(image_path: str) -> str:
        return image_path + '.fs'

    def is_mounted(self, mount_dir: str) -> bool:
        return os.path.abspath(mount_dir) in self.table

    def mount(self, image_path: str, mount_dir: str):
        self.mount_calls += 1
        time.sleep(self.delay)
        mount_dir = os.path.abspath(mount_dir)
        if self.fail_mount:
            raise MountFailed(f'{image_path}: wrong fs type, bad superblock')
        backing = self.backing_dir(image_path)
        os.makedirs(backing, exist_ok=True)
        shutil.copytree(backing, mount_dir, symlinks=True, dirs_exist_ok=True)
        self.table.add(mount_dir)
        self.sources[mount_dir] = image_path

    def umount(self, mount_dir: str):
        self.umount_calls += 1
        time.sleep(self.delay)
        mount_dir = os.path.abspath(mount_dir)
        if mount_dir not in self.table:
            raise UnmountFailed(f'{mount_dir}: not mounted')
        if self.fail_umount:
            raise UnmountFailed(f'{mount_dir}: target is busy')
        backing = self.backing_dir(self.sources.pop(mount_dir))
        shutil.rmtree(backing)
        shutil.copytree(mount_dir, backing, symlinks=True)
        for entry in os.listdir(mount_dir):
            path = os.path.join(mount_dir, entry)
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        self.table.discard(mount_dir)

class FakeBuilder(AbstractKernelBuilder):
    """Produces a kernel image and an install tree without running make."""

    def __init__(self, source_error: Exception | None=None, build_error: Exception | None=None, delay: float=0):
        self.source_error = source_error
        self.build_error = build_error
        self.delay = delay
        self.toolchain: ToolchainDescriptor | None = None
        self.built = asyncio.Event()

    async def prepare_source(self, paths: WorkspacePaths, argument, task_type):
        os.makedirs(paths.src_dir, exist_ok=True)
        if self.source_error is not None:
            raise self.source_error

    async def build(self, paths: WorkspacePaths, toolchain: ToolchainDescriptor, kconfig: str=''):
        self.toolchain = toolchain
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.build_error is not None:
            raise self.build_error
        os.makedirs(os.path.dirname(paths.kernel_image), exist_ok=True)
        with open(paths.kernel_image, 'wb') as fp:
            fp.write(b'bzImage')
        for name, header in (('asm', 'unistd.h'), ('linux', 'types.h')):
            include = os.path.join(paths.install_dir, 'include', name)
            os.makedirs(include, exist_ok=True)
            with open(os.path.join(include, header), 'w') as fp:
                fp.write(f'/* {name} */\n')
        self.built.set()

def write_file(path: str, content: str | bytes=''):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb' if isinstance(content, bytes) else 'w') as fp:
        fp.write(content)

async def open_backend(config) -> SchedulerBackend:
    backend = SchedulerBackend(config)
    await backend.start()
    return backend
