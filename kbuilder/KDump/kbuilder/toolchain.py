# toolchain.py
import os, re, shlex
from typing import Dict, List, Mapping, Sequence
from pydantic import BaseModel, ConfigDict

from KDump.kcore import UnsupportedToolchain

# versions present in the pinned build environment;
DEFAULT_TOOLCHAINS: Dict[str, tuple[str, ...]] = {
    'gcc': tuple(str(v) for v in range(8, 15)),
    'clang': tuple(str(v) for v in range(8, 20))
}

NIXOS_21_05 = 'https://github.com/NixOS/nixpkgs/archive/nixos-21.05.tar.gz'
NIXOS_21_11 = 'https://github.com/NixOS/nixpkgs/archive/nixos-21.11.tar.gz'

_IDENTIFIER = re.compile(r'^(?P<family>gcc|clang)-(?P<version>default|\d+)$')

GNU_BINARIES = {
    'CC': 'gcc', 'CXX': 'g++', 'LD': 'ld', 'AR': 'ar',
    'NM': 'nm', 'OBJCOPY': 'objcopy', 'STRIP': 'strip'
}

LLVM_BINARIES = {
    'CC': 'clang', 'CXX': 'clang++', 'LD': 'ld.lld', 'AR': 'llvm-ar',
    'NM': 'llvm-nm', 'OBJCOPY': 'llvm-objcopy', 'STRIP': 'llvm-strip'
}

class ToolchainDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    compiler: str
    family: str
    version: str
    package: str
    channel: str | None=None
    binaries: Dict[str, str]
    makeFlags: List[str]
    parallelism: int
    environment: Dict[str, str]

    def make_command(self, *targets: str, build_dir: str | None=None) -> List[str]:
        cmd = ['make']
        if build_dir is not None:
            cmd.append(f'O={build_dir}')
        return cmd + list(self.makeFlags) + list(targets)

    def build_environment(self, base: Mapping[str, str] | None=None) -> Dict[str, str]:
        env = dict(os.environ if base is None else base)
        env.update(self.binaries)
        env.update(self.environment)
        return env

    def nix_shell_command(self, shell_nix: str, command: Sequence[str]) -> List[str]:
        return [
            'nix-shell', shell_nix, '--pure',
            '--argstr', 'compiler', self.compiler,
            '--run', shlex.join(command)
        ]

def _channel_for(family: str, version: str) -> str | None:
    if family == 'gcc' and version == '8':
        return NIXOS_21_05
    if family == 'clang' and version in ('8', '9', '10', '11'):
        return NIXOS_21_11
    return None

def resolve_toolchain(
    identifier: str,
    available: Mapping[str, Sequence[str]] | None=None,
    cpu_count: int | None=None
) -> ToolchainDescriptor:
    """Resolve `gcc-default`, `gcc-<N>` or `clang-<N>` to a build environment.

    Raises UnsupportedToolchain when the identifier is malformed or the
    requested version is not part of `available`.
    """
    available = DEFAULT_TOOLCHAINS if available is None else available
    matched = _IDENTIFIER.match(identifier.strip())
    if matched is None:
        raise UnsupportedToolchain(identifier)
    family, version = matched.group('family'), matched.group('version')

    if version == 'default':
        if family != 'gcc':
            raise UnsupportedToolchain(identifier)
        package = 'gcc'
    elif version not in available.get(family, ()):
        raise UnsupportedToolchain(identifier)
    elif family == 'gcc':
        package = f'gcc{version}'
    else:
        package = f'llvmPackages_{version}'

    parallelism = max(1, cpu_count if cpu_count is not None else (os.cpu_count() or 1))
    if family == 'clang':
        binaries = dict(LLVM_BINARIES)
        make_flags = ['LLVM=1'] + [
            f'{k}={binaries[k]}' for k in ('CC', 'LD', 'AR', 'NM', 'OBJCOPY', 'STRIP')
        ]
    else:
        binaries = dict(GNU_BINARIES)
        make_flags = []
    make_flags.append(f'-j{parallelism}')

    return ToolchainDescriptor(
        compiler=identifier.strip(),
        family=family,
        version=version,
        package=package,
        channel=_channel_for(family, version),
        binaries=binaries,
        makeFlags=make_flags,
        parallelism=parallelism,
        environment={
            'KBUILD_BUILD_HOST': 'kdump-kernel-build',
            'KBUILD_BUILD_USER': 'kdump'
        }
    )
