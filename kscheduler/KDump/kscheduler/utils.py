from typing import Literal

SortingModes = Literal['createdTime', 'startedTime', 'finishedTime']
MAX_PAGE_SIZE = 500
