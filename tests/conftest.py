import pytest

from KDump.kcore import StorageProviderConfig, workspace_paths
from KDump.kcore.storage_backends import LocalStorageBackend
from KDump.kscheduler import SchedulerConfig

from fakes import write_file

@pytest.fixture
def scheduler_config(tmp_path):
    return SchedulerConfig(
        deploymentName='test',
        storage=StorageProviderConfig(
            providerType='local',
            providerConfig={'root': str(tmp_path / 'storage')}
        ),
        dbPath=str(tmp_path / 'scheduler.db')
    )

@pytest.fixture
def storage(scheduler_config):
    return LocalStorageBackend(scheduler_config.storage)

@pytest.fixture
def template_image(tmp_path):
    path = str(tmp_path / 'storage' / 'userspace-images' / 'debian.img')
    write_file(path, b'\0' * 16)
    return path

@pytest.fixture
def workspace_root(tmp_path):
    return str(tmp_path / 'workspace')

@pytest.fixture
def paths(workspace_root):
    return workspace_paths(workspace_root, 'abc123', 'deadbeef')

@pytest.fixture
def image(paths):
    write_file(paths.image_path, b'\0' * 16)
    return paths.image_path

