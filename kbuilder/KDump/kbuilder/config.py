from typing import Dict, List
from pydantic import BaseModel, ConfigDict, Field

from .kernel_config import CRASH_DUMP_OPTIONS
from .toolchain import DEFAULT_TOOLCHAINS

class ReproducerConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    workspaceRoot: str=Field('/var/lib/kdump/workspace')
    templateImageKey: str=Field('userspace-images/debian.img')
    availableToolchains: Dict[str, List[str]]=Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_TOOLCHAINS.items()}
    )
    requiredKernelConfig: Dict[str, str]=Field(default_factory=lambda: dict(CRASH_DUMP_OPTIONS))
    # seconds;
    buildTimeout: float=Field(4 * 3600, gt=0)
    # argv, formatted with the workspace paths; empty: boot happens out of band;
    bootCommand: List[str]=Field(default_factory=list)
    bootTimeout: float=Field(1800, gt=0)
    nixShellPath: str | None=None
    compileCommands: bool=False
