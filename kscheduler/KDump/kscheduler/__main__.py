# __main__.py
import sys, os
from .main import SchedulerApplication
from .config import SchedulerConfig

def load_config(argv: list[str]) -> SchedulerConfig:
    config_path = argv[1] if len(argv) == 2 else os.environ['KDUMP_SCHEDULER_CONFIG']
    with open(config_path) as fp:
        return SchedulerConfig.model_validate_json(fp.read())

if __name__ == '__main__':
    SchedulerApplication(load_config(sys.argv)).main()
