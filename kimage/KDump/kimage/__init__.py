from .loop import *
from .mount_manager import *
from .extractor import *
