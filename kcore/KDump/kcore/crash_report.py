# crash_report.py
import re
from typing import List
from urllib.parse import urljoin
from pydantic import BaseModel, ConfigDict, Field

from .models import TaskRequest, TaskArgument, TaskType, DEFAULT_GIT_URL

SYZKALLER_URL = 'https://syzkaller.appspot.com/'

_COMPILER_DESCRIPTION = re.compile(r'\b(?P<family>gcc|clang)\b.*?(?P<major>\d+)\.\d+')
# gitweb views of a repository, e.g. `.../linux.git/log/?id=<commit>`;
_GIT_WEB_SUFFIX = re.compile(r'/(?:log|commit)/?(?:\?.*)?$')

class _ReportModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

class FixCommit(_ReportModel):
    title: str=''
    link: str=''
    hash: str=''
    repo: str=''
    branch: str=''

class Crash(_ReportModel):
    title: str=''
    syzReproducer: str=Field('', alias='syz-reproducer')
    cReproducer: str=Field('', alias='c-reproducer')
    kernelConfig: str=Field('', alias='kernel-config')
    kernelSourceGit: str=Field('', alias='kernel-source-git')
    kernelSourceCommit: str=Field('', alias='kernel-source-commit')
    syzkallerGit: str=Field('', alias='syzkaller-git')
    syzkallerCommit: str=Field('', alias='syzkaller-commit')
    compilerDescription: str=Field('', alias='compiler-description')
    architecture: str=''
    crashReportLink: str=Field('', alias='crash-report-link')

class CrashReport(_ReportModel):
    """A syzbot bug export: one bug, its crashes and the commits fixing it."""

    version: int=0
    title: str=''
    displayTitle: str=Field('', alias='display-title')
    id: str
    status: str=''
    fixCommits: List[FixCommit]=Field(default_factory=list, alias='fix-commits')
    discussions: List[str]=Field(default_factory=list)
    crashes: List[Crash]=Field(default_factory=list)
    subsystems: List[str]=Field(default_factory=list)
    parentOfFixCommit: str=Field('', alias='parent_of_fix_commit')
    patch: str=''
    patchModifiedFiles: List[str]=Field(default_factory=list, alias='patch_modified_files')

    def crash(self, index: int=0) -> Crash:
        if not 0 <= index < len(self.crashes):
            raise ValueError(f'crash report {self.id} has no crash #{index}')
        return self.crashes[index]

def load_crash_report(path: str) -> CrashReport:
    with open(path) as fp:
        return CrashReport.model_validate_json(fp.read())

def compiler_identifier(description: str) -> str:
    """`gcc (GCC) 10.1.0-syz 20200507` -> `gcc-10`; `Debian clang version 15.0.6` -> `clang-15`."""
    matched = _COMPILER_DESCRIPTION.search(description)
    if matched is None:
        raise ValueError(f'unrecognized compiler description: {description!r}')
    return f"{matched.group('family')}-{matched.group('major')}"

def source_repository(url: str) -> str:
    url = _GIT_WEB_SUFFIX.sub('', url.strip())
    return DEFAULT_GIT_URL if url == '' else url

def artifact_url(link: str) -> str:
    return urljoin(SYZKALLER_URL, link)

def task_request_from_crash_report(
    report: CrashReport,
    reproducer: str,
    kconfig: str='',
    crash_index: int=0,
    apply_fix: bool=False
) -> TaskRequest:
    crash = report.crash(crash_index)
    if apply_fix:
        if report.parentOfFixCommit == '' or report.patch == '':
            raise ValueError(f'crash report {report.id} carries no fix to apply')
        task_type, revision, patch = TaskType.PatchApply, report.parentOfFixCommit, report.patch
    else:
        task_type, revision, patch = TaskType.GetVmcore, crash.kernelSourceCommit, ''
    return TaskRequest(
        taskType=task_type,
        argument=TaskArgument(
            revision=revision,
            compiler=compiler_identifier(crash.compilerDescription),
            gitUrl=source_repository(crash.kernelSourceGit),
            kConfig=kconfig,
            patch=patch,
            reproducer=reproducer
        )
    )
