import json, asyncio, httpx, pytest

from KDump.kcore import (
    CrashReport, TaskRequest, TaskType, TaskStatus, Task, DEFAULT_GIT_URL,
    compiler_identifier, source_repository, load_crash_report, utc_now
)
from KDump.kclient import kDumpClient, fetch_crash_artifacts

KERNEL_COMMIT = '02d5e016800d082058b3d3b7c3ede136cdc6ddcb'
REPRODUCER = 'int main(void) { return syscall(1337); }\n'
KCONFIG = 'CONFIG_64BIT=y\nCONFIG_KASAN=y\n'
FIX = 'diff --git a/fs/foo.c b/fs/foo.c\n--- a/fs/foo.c\n+++ b/fs/foo.c\n@@ -1 +1 @@\n-a\n+b\n'

REPORT = {
    'version': 1,
    'title': 'KASAN: use-after-free Read in foo_release',
    'display-title': 'KASAN: use-after-free Read in foo_release',
    'id': '0b6b2d6d6cefa8b462930e55be699efba635788f',
    'status': 'fixed on 2023/05/02 10:11',
    'fix-commits': [{
        'title': 'foo: drop the reference after release',
        'link': 'https://git.kernel.org/torvalds/c/1234abcd',
        'hash': '1234abcd',
        'repo': 'https://git.kernel.org/pub/scm/linux/kernel/git/torvalds/linux.git',
        'branch': 'master'
    }],
    'discussions': [],
    'crashes': [{
        'title': 'KASAN: use-after-free Read in foo_release',
        'syz-reproducer': '/text?tag=ReproSyz&x=11',
        'c-reproducer': '/text?tag=ReproC&x=12',
        'kernel-config': '/text?tag=KernelConfig&x=13',
        'kernel-source-git': f'https://git.kernel.org/pub/scm/linux/kernel/git/torvalds/linux.git/log/?id={KERNEL_COMMIT}',
        'kernel-source-commit': KERNEL_COMMIT,
        'syzkaller-git': 'https://github.com/google/syzkaller/commits/f0c0d9a7',
        'syzkaller-commit': 'f0c0d9a7',
        'compiler-description': 'gcc (GCC) 10.1.0-syz 20200507',
        'architecture': 'amd64',
        'crash-report-link': '/text?tag=CrashReport&x=14'
    }],
    'subsystems': ['fs'],
    'parent_of_fix_commit': 'a1b2c3d4',
    'patch': FIX,
    'patch_modified_files': ['fs/foo.c']
}

def _syzbot(request: httpx.Request) -> httpx.Response:
    assert request.url.host == 'syzkaller.appspot.com'
    texts = {'ReproC': REPRODUCER, 'KernelConfig': KCONFIG}
    tag = request.url.params.get('tag')
    if request.url.path != '/text' or tag not in texts:
        return httpx.Response(404)
    return httpx.Response(200, text=texts[tag])

def _report(**changes):
    report = json.loads(json.dumps(REPORT))
    report['crashes'][0].update(changes)
    return CrashReport.model_validate(report)

def test_parse_report(tmp_path):
    path = tmp_path / 'report.json'
    path.write_text(json.dumps(REPORT))
    report = load_crash_report(str(path))
    assert report.displayTitle == REPORT['display-title']
    assert report.fixCommits[0].hash == '1234abcd'
    assert report.parentOfFixCommit == 'a1b2c3d4'
    assert report.patchModifiedFiles == ['fs/foo.c']
    crash = report.crash()
    assert crash.cReproducer == '/text?tag=ReproC&x=12'
    assert crash.kernelSourceCommit == KERNEL_COMMIT
    with pytest.raises(ValueError):
        report.crash(1)

@pytest.mark.parametrize('description,identifier', [
    ('gcc (GCC) 10.1.0-syz 20200507', 'gcc-10'),
    ('gcc (Debian 12.2.0-14) 12.2.0, GNU ld (GNU Binutils for Debian) 2.40', 'gcc-12'),
    ('Debian clang version 15.0.6, GNU ld (GNU Binutils for Debian) 2.40', 'clang-15'),
    ('clang version 8.0.1 (trunk 359573)', 'clang-8')
])
def test_compiler_identifier(description, identifier):
    assert compiler_identifier(description) == identifier

def test_unknown_compiler():
    with pytest.raises(ValueError):
        compiler_identifier('icc 2021.1')

def test_source_repository():
    repo = 'https://git.kernel.org/pub/scm/linux/kernel/git/torvalds/linux.git'
    assert source_repository(f'{repo}/log/?id={KERNEL_COMMIT}') == repo
    assert source_repository(f'{repo}/commit/?id={KERNEL_COMMIT}') == repo
    assert source_repository(repo) == repo
    assert source_repository('') == DEFAULT_GIT_URL

def test_request_at_crash_commit():
    request = TaskRequest.from_crash_report(_report(), REPRODUCER, KCONFIG)
    assert request.taskType == TaskType.GetVmcore
    assert request.taskId is None
    argument = request.argument
    assert argument.revision == KERNEL_COMMIT
    assert argument.compiler == 'gcc-10'
    assert argument.gitUrl == 'https://git.kernel.org/pub/scm/linux/kernel/git/torvalds/linux.git'
    assert argument.reproducer == REPRODUCER
    assert argument.kConfig == KCONFIG
    assert argument.patch == ''

def test_request_with_fix_applied():
    request = TaskRequest.from_crash_report(_report(), REPRODUCER, apply_fix=True)
    assert request.taskType == TaskType.PatchApply
    assert request.argument.revision == 'a1b2c3d4'
    assert request.argument.patch == FIX

def test_request_without_fix():
    report = _report()
    report.patch = ''
    with pytest.raises(ValueError):
        TaskRequest.from_crash_report(report, REPRODUCER, apply_fix=True)

def test_fetch_artifacts():
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_syzbot)) as fetcher:
            return await fetch_crash_artifacts(_report().crash(), fetcher)

    assert asyncio.run(main()) == (REPRODUCER, KCONFIG)

def test_fetch_without_config():
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_syzbot)) as fetcher:
            return await fetch_crash_artifacts(_report(**{'kernel-config': ''}).crash(), fetcher)

    assert asyncio.run(main()) == (REPRODUCER, '')

def test_fetch_missing_reproducer():
    async def main(crash):
        async with httpx.AsyncClient(transport=httpx.MockTransport(_syzbot)) as fetcher:
            return await fetch_crash_artifacts(crash, fetcher)

    with pytest.raises(ValueError):
        asyncio.run(main(_report(**{'c-reproducer': ''}).crash()))
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(main(_report(**{'c-reproducer': '/text?tag=Gone&x=1'}).crash()))

def test_sync_client_submits_report():
    submitted = []

    def scheduler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == '/newTask'
        task_request = TaskRequest.model_validate_json(request.content)
        submitted.append(task_request)
        task = Task(
            taskId='abc123',
            taskType=task_request.taskType,
            status=TaskStatus.Pending,
            createdTime=utc_now(),
            argument=task_request.argument
        )
        return httpx.Response(200, text=task.model_dump_json())

    fetcher = httpx.Client(transport=httpx.MockTransport(_syzbot))
    with kDumpClient('http://scheduler', transport=httpx.MockTransport(scheduler)) as client:
        task = client.create_task_from_crash_report(_report(), apply_fix=True, fetcher=fetcher)
    fetcher.close()

    assert task.taskType == TaskType.PatchApply
    assert task.argument.reproducer == REPRODUCER
    assert task.argument.kConfig == KCONFIG
    assert submitted[0].argument.revision == 'a1b2c3d4'
