from .models import *
from .crash_report import *
from .errors import *
from .utils import *
from .storage_backends import *
from .store import *
from .rpc import *
from .scheduler import *
from .workspace import *
from .worker import *
from .orchestrator import *
