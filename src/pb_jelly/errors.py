from typing import Optional


class PocketBaseToolError(RuntimeError):
    pass


class ConfigurationError(PocketBaseToolError):
    pass


class NotFoundError(PocketBaseToolError):
    pass


class BinaryNotFoundError(NotFoundError):
    def __init__(self, path: str):
        super().__init__(
            f"PocketBase binary not found at {path}. Run 'pb-jelly install' to download it."
        )
        self.path = path


class StaleHandleError(PocketBaseToolError):
    def __init__(self, pid: int, pid_file: str):
        super().__init__(f"Recorded PID {pid} in {pid_file} is no longer alive")
        self.pid = pid
        self.pid_file = pid_file


class SignalFailedError(PocketBaseToolError):
    def __init__(self, pid: int, reason: str):
        super().__init__(f"Failed to signal process {pid}: {reason}")
        self.pid = pid


class StopTimeoutError(PocketBaseToolError):
    def __init__(self, pid: int):
        super().__init__(f"Process {pid} is still alive after a forced kill")
        self.pid = pid


class AlreadyRunningError(PocketBaseToolError):
    pass


class PortInUseError(PocketBaseToolError):
    pass


class ReadyTimeoutError(PocketBaseToolError):
    pass


class InstallError(PocketBaseToolError):
    pass


class ApiError(PocketBaseToolError):
    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"{message}{detail}")
        self.status = status
        self.body = body
