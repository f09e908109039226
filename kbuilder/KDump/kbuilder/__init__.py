from .toolchain import *
from .kernel_config import *
from .config import *
from .checkout_manager import *
from .linux_builder import *
from .reproduce_task import *
