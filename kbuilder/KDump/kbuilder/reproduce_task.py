# reproduce_task.py
import os, asyncio, aiofiles
import asyncio.subprocess as asp
from typing import Awaitable, Callable

from KDump.kcore import (
    TaskBase, Task, TaskOutcome, TaskStatus, SystemConfig,
    WorkspacePaths, workspace_paths, prepare_workspace,
    ImageNotFound, BootFailed, VMCORE_NAME
)
from KDump.kcore.storage_backends import AbstractStorageBackend, create_storage_backend
from KDump.kcore.utils import run_async
from KDump.kimage import AbstractMounter, mount_and_inject, extract_artifacts

from .config import ReproducerConfig
from .linux_builder import AbstractKernelBuilder, LinuxBuilder
from .toolchain import resolve_toolchain

BootHook = Callable[[WorkspacePaths], Awaitable[None]]

NO_CRASH_RESULT = 'no crash observed'

class ReproduceTask(TaskBase):

    def __init__(
        self,
        orchestrator,
        task: Task,
        config: ReproducerConfig,
        storage_backend: AbstractStorageBackend,
        builder: AbstractKernelBuilder | None=None,
        mounter: AbstractMounter | None=None,
        boot: BootHook | None=None
    ):
        super().__init__(orchestrator, task)
        self.config = config
        self.storage_backend = storage_backend
        self.builder = LinuxBuilder(
            self.report_job_log,
            config.requiredKernelConfig,
            config.buildTimeout,
            config.nixShellPath,
            config.compileCommands
        ) if builder is None else builder
        self.mounter = mounter
        if boot is None and len(config.bootCommand) != 0:
            boot = self.run_boot_command
        self.boot = boot

    @classmethod
    def from_system_config(cls, orchestrator, task: Task, system_config: SystemConfig):
        config = ReproducerConfig.model_validate(system_config.workerConfig or dict())
        return cls(orchestrator, task, config, create_storage_backend(system_config.storage))

    async def write_trigger(self, paths: WorkspacePaths):
        async with aiofiles.open(paths.trigger_path, 'w') as fp:
            await fp.write(self.argument.reproducer)

    async def fetch_image(self, paths: WorkspacePaths):
        if await run_async(os.path.isfile, paths.image_path):
            await self.report_job_log('Userspace image already present')
            return
        key = self.config.templateImageKey
        if not await self.storage_backend.resource_exists(key):
            raise ImageNotFound(key)
        await self.report_job_log('Downloading userspace image')
        partial_path = paths.image_path + '.part'
        try:
            await self.storage_backend.download_resource(key, partial_path)
        except FileNotFoundError:
            raise ImageNotFound(key)
        await run_async(os.replace, partial_path, paths.image_path)
        await self.report_job_log('Userspace image downloaded')

    async def run_boot_command(self, paths: WorkspacePaths):
        cmd = [arg.format(**paths.model_dump()) for arg in self.config.bootCommand]
        await self.report_job_log(f'Booting: {" ".join(cmd)}')
        proc = await asp.create_subprocess_exec(
            *cmd, cwd=paths.work_dir,
            stdin=asp.DEVNULL, stdout=asp.DEVNULL, stderr=asp.DEVNULL
        )
        try:
            code = await asyncio.wait_for(proc.wait(), self.config.bootTimeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise BootFailed(f'boot exceeded {self.config.bootTimeout}s')
        except asyncio.CancelledError:
            proc.kill()
            await asyncio.shield(proc.wait())
            raise
        if code != 0:
            raise BootFailed(f'boot command exited with {code}')

    async def on_task(self) -> TaskOutcome:
        paths = workspace_paths(self.config.workspaceRoot, self.task_id, self.argument.revision)
        await prepare_workspace(paths)

        toolchain = resolve_toolchain(self.argument.compiler, self.config.availableToolchains)
        await self.report_job_log(f'Toolchain {toolchain.compiler} resolved to {toolchain.package}')

        await self.write_trigger(paths)
        await self.builder.prepare_source(paths, self.argument, self.task.taskType)
        await self.builder.build(paths, toolchain, self.argument.kConfig)

        await self.fetch_image(paths)
        await mount_and_inject(paths, self.mounter, self.report_job_log)

        if self.boot is not None:
            await self.boot(paths)

        report = await extract_artifacts(paths, self.mounter, self.report_job_log)
        if report.vmcorePath is None:
            return TaskOutcome(status=TaskStatus.Success, result=NO_CRASH_RESULT)
        return TaskOutcome(
            status=TaskStatus.Success,
            result='vmcore extracted',
            artifactPath=report.vmcorePath,
            artifactName=VMCORE_NAME
        )
