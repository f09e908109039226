# errors.py

# Inherit this exception for custom exception;
# the code names the cause recorded in Task.result;
class TaskExceptionError(Exception):
    def __init__(self, code: str, content=None):
        super(TaskExceptionError, self).__init__(code, content)
        self.code = code
        self.content = content

    def describe(self) -> str:
        if self.content is None:
            return self.code
        return f'{self.code}: {self.content}'

class _CodedError(TaskExceptionError):
    def __init__(self, content=None):
        super(_CodedError, self).__init__(type(self).__name__, content)

class ImageNotFound(_CodedError):
    pass

class MountFailed(_CodedError):
    pass

class UnmountFailed(_CodedError):
    pass

class HeaderCopyFailed(_CodedError):
    pass

class TriggerCopyFailed(_CodedError):
    pass

class DirectoryCreateError(_CodedError):
    pass

class UnsupportedToolchain(_CodedError):
    pass

class SourceFetchFailed(_CodedError):
    pass

class PatchApplyFailed(_CodedError):
    pass

class KernelConfigFailed(_CodedError):
    pass

class BuildFailed(_CodedError):
    pass

class BuildTimeout(_CodedError):
    pass

class BootFailed(_CodedError):
    pass

CancelledCode = 'Cancelled'
InternalErrorCode = 'InternalError'
AbortedCode = 'Aborted'
