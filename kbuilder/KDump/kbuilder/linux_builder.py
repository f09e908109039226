# linux_builder.py
import os, asyncio, aiofiles
import asyncio.subprocess as asp
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping

from KDump.kcore import TaskArgument, TaskType, WorkspacePaths, KernelConfigFailed, BuildFailed, BuildTimeout
from KDump.kcore.utils import Reporter, run_async

from .checkout_manager import CheckoutManager
from .kernel_config import fix_kernel_config
from .toolchain import ToolchainDescriptor

class AbstractKernelBuilder(ABC):

    @abstractmethod
    async def prepare_source(self, paths: WorkspacePaths, argument: TaskArgument, task_type: TaskType):
        pass

    @abstractmethod
    async def build(self, paths: WorkspacePaths, toolchain: ToolchainDescriptor, kconfig: str=''):
        """Leave a kernel image at `paths.kernel_image` and headers under `paths.install_dir`."""
        pass

class LinuxBuilder(AbstractKernelBuilder):

    def __init__(
        self,
        report: Reporter,
        required_config: Mapping[str, str],
        build_timeout: float,
        nix_shell_path: str | None=None,
        compile_commands: bool=False
    ):
        self.report = report
        self.required_config = dict(required_config)
        self.build_timeout = build_timeout
        self.nix_shell_path = nix_shell_path
        self.compile_commands = compile_commands

    async def prepare_source(self, paths: WorkspacePaths, argument: TaskArgument, task_type: TaskType):
        checkout_mgr = CheckoutManager(self.report, paths.src_dir, argument.gitUrl)
        await checkout_mgr.fetch(argument.revision)
        if task_type == TaskType.PatchApply:
            await checkout_mgr.apply_patch(argument.patch)

    def _wrap(self, toolchain: ToolchainDescriptor, cmd: List[str]) -> tuple[List[str], Dict[str, str]]:
        if self.nix_shell_path is not None:
            return toolchain.nix_shell_command(self.nix_shell_path, cmd), dict(os.environ)
        return cmd, toolchain.build_environment()

    async def _make(
        self,
        paths: WorkspacePaths,
        toolchain: ToolchainDescriptor,
        *targets: str,
        log_name: str,
        timeout: float | None=None
    ) -> int:
        cmd, env = self._wrap(toolchain, toolchain.make_command(*targets, build_dir=paths.build_dir))
        stdout_fp = await run_async(open, os.path.join(paths.build_dir, f'{log_name}.log'), 'w')
        stderr_fp = await run_async(open, os.path.join(paths.build_dir, f'{log_name}.err.log'), 'w')
        try:
            proc = await asp.create_subprocess_exec(
                *cmd,
                cwd=paths.src_dir,
                env=env,
                stdin=asp.DEVNULL,
                stdout=stdout_fp,
                stderr=stderr_fp
            )
            try:
                return await asyncio.wait_for(proc.wait(), timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise BuildTimeout(f'`{" ".join(("make",) + targets)}` exceeded {timeout}s')
            except asyncio.CancelledError:
                proc.kill()
                await asyncio.shield(proc.wait())
                raise
        finally:
            await run_async(stdout_fp.close)
            await run_async(stderr_fp.close)

    async def make_kernel_config(self, paths: WorkspacePaths, toolchain: ToolchainDescriptor, kconfig: str):
        config_path = os.path.join(paths.build_dir, '.config')
        if kconfig != '':
            async with aiofiles.open(config_path, 'w') as fp:
                await fp.write(kconfig)
        elif (await self._make(paths, toolchain, 'defconfig', log_name='KernelConfig')) != 0:
            raise KernelConfigFailed('Unable to `make defconfig`')

        async with aiofiles.open(config_path) as fp:
            text = await fp.read()
        text, changes = fix_kernel_config(text, self.required_config)
        if len(changes) != 0:
            async with aiofiles.open(config_path, 'w') as fp:
                await fp.write(text)
            await self.report('Kernel config fixed: ' + ', '.join(changes))

        if (await self._make(paths, toolchain, 'olddefconfig', log_name='KernelConfig')) != 0:
            raise KernelConfigFailed('Unable to `make olddefconfig`')

    async def make_kernel(self, paths: WorkspacePaths, toolchain: ToolchainDescriptor):
        await self.report(f'Building with {toolchain.compiler}')
        code = await self._make(paths, toolchain, log_name='LinuxBuilder', timeout=self.build_timeout)
        if code != 0:
            raise BuildFailed(f'make exited with {code}')
        if not await run_async(os.path.exists, paths.kernel_image):
            raise BuildFailed(f'{paths.kernel_image} was not produced')

    async def make_headers(self, paths: WorkspacePaths, toolchain: ToolchainDescriptor):
        code = await self._make(
            paths, toolchain,
            'headers_install', f'INSTALL_HDR_PATH={paths.install_dir}',
            log_name='HeadersInstall'
        )
        if code != 0:
            raise BuildFailed('Unable to `make headers_install`')

    async def make_compile_commands(self, paths: WorkspacePaths):
        for script in ('scripts/clang-tools/gen_compile_commands.py', 'scripts/gen_compile_commands.py'):
            if not await run_async(os.path.exists, os.path.join(paths.src_dir, script)):
                continue
            proc = await asp.create_subprocess_exec(
                'python3', script, '-d', paths.build_dir,
                '-o', os.path.join(paths.build_dir, 'compile_commands.json'),
                cwd=paths.src_dir,
                stdin=asp.DEVNULL, stdout=asp.DEVNULL, stderr=asp.DEVNULL
            )
            if (await proc.wait()) != 0:
                await self.report('compile_commands.json not generated')
            return

    async def build(self, paths: WorkspacePaths, toolchain: ToolchainDescriptor, kconfig: str=''):
        await self.make_kernel_config(paths, toolchain, kconfig)
        await self.make_kernel(paths, toolchain)
        await self.make_headers(paths, toolchain)
        if self.compile_commands:
            await self.make_compile_commands(paths)
        await self.report('LinuxBuilder finished')
