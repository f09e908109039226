import os, asyncio, stat, pytest

from KDump.kcore import BuildFailed, BuildTimeout, KernelConfigFailed, prepare_workspace
from KDump.kbuilder import LinuxBuilder, resolve_toolchain, parse_kernel_config

FAKE_MAKE = '''#!/bin/sh
for arg in "$@"; do
    case "$arg" in
        O=*) out="${arg#O=}" ;;
        INSTALL_HDR_PATH=*) hdr="${arg#INSTALL_HDR_PATH=}" ;;
    esac
done
echo "$@" >> "$out/make.calls"
case "$*" in
    *defconfig*) [ -f "$out/.config" ] || echo "CONFIG_64BIT=y" > "$out/.config"; exit $CONFIG_EXIT ;;
    *headers_install*) mkdir -p "$hdr/include/asm" "$hdr/include/linux"; exit 0 ;;
esac
echo $$ > "$out/make.pid"
sleep $BUILD_SECONDS
mkdir -p "$out/arch/x86_64/boot"
[ "$BUILD_EXIT" = 0 ] && touch "$out/arch/x86_64/boot/bzImage"
exit $BUILD_EXIT
'''

@pytest.fixture
def fake_make(tmp_path, monkeypatch):
    bindir = tmp_path / 'bin'
    bindir.mkdir()
    make = bindir / 'make'
    make.write_text(FAKE_MAKE)
    make.chmod(make.stat().st_mode | stat.S_IEXEC)
    monkeypatch.setenv('PATH', f'{bindir}{os.pathsep}{os.environ.get("PATH", "")}')
    monkeypatch.setenv('CONFIG_EXIT', '0')
    monkeypatch.setenv('BUILD_EXIT', '0')
    monkeypatch.setenv('BUILD_SECONDS', '0')
    return monkeypatch

def _builder(messages, timeout=30):
    async def report(message):
        messages.append(message)
    return LinuxBuilder(report, {'CONFIG_KEXEC': 'y', 'CONFIG_64BIT': 'y'}, timeout)

def _prepare(paths):
    asyncio.run(prepare_workspace(paths))
    os.makedirs(paths.src_dir, exist_ok=True)

def test_build(fake_make, paths):
    _prepare(paths)
    messages = []
    asyncio.run(_builder(messages).build(paths, resolve_toolchain('gcc-12', cpu_count=3)))

    assert os.path.isfile(paths.kernel_image)
    assert os.path.isdir(os.path.join(paths.install_dir, 'include', 'linux'))
    with open(os.path.join(paths.build_dir, '.config')) as fp:
        assert parse_kernel_config(fp.read())['CONFIG_KEXEC'] == 'y'
    with open(os.path.join(paths.build_dir, 'make.calls')) as fp:
        calls = fp.read().splitlines()
    assert calls[0] == f'O={paths.build_dir} -j3 defconfig'
    assert calls[1] == f'O={paths.build_dir} -j3 olddefconfig'
    assert calls[2] == f'O={paths.build_dir} -j3'
    assert 'Kernel config fixed: CONFIG_KEXEC: missing -> y' in messages

def test_given_config_skips_defconfig(fake_make, paths):
    _prepare(paths)
    asyncio.run(_builder([]).build(
        paths, resolve_toolchain('gcc-12', cpu_count=1), 'CONFIG_64BIT=y\nCONFIG_KEXEC=y\n'
    ))
    with open(os.path.join(paths.build_dir, 'make.calls')) as fp:
        assert not any(call.endswith(' defconfig') for call in fp.read().splitlines())

def test_config_failure(fake_make, paths):
    fake_make.setenv('CONFIG_EXIT', '1')
    _prepare(paths)
    with pytest.raises(KernelConfigFailed):
        asyncio.run(_builder([]).build(paths, resolve_toolchain('gcc-12', cpu_count=1)))

def test_build_failure(fake_make, paths):
    fake_make.setenv('BUILD_EXIT', '2')
    _prepare(paths)
    with pytest.raises(BuildFailed) as e:
        asyncio.run(_builder([]).build(paths, resolve_toolchain('gcc-12', cpu_count=1)))
    assert e.value.describe() == 'BuildFailed: make exited with 2'

def test_build_timeout(fake_make, paths):
    fake_make.setenv('BUILD_SECONDS', '30')
    _prepare(paths)
    with pytest.raises(BuildTimeout):
        asyncio.run(_builder([], timeout=0.5).build(paths, resolve_toolchain('gcc-12', cpu_count=1)))
    assert not os.path.exists(paths.kernel_image)

def test_cancelled_build_leaves_no_process(fake_make, paths):
    fake_make.setenv('BUILD_SECONDS', '30')
    _prepare(paths)
    pid_path = os.path.join(paths.build_dir, 'make.pid')

    async def main():
        build = asyncio.create_task(_builder([]).build(paths, resolve_toolchain('gcc-12', cpu_count=1)))
        while not (os.path.exists(pid_path) and os.path.getsize(pid_path) > 0):
            await asyncio.sleep(0.05)
        build.cancel()
        with pytest.raises(asyncio.CancelledError):
            await build

    asyncio.run(main())
    with open(pid_path) as fp:
        pid = int(fp.read())
    # killed and reaped, not left as a zombie;
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
