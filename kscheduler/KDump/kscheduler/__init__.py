from .config import *
from .backend import *
from .scheduler_server import *
