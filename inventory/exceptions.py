"""Errors raised by the inventory services."""


class InventoryError(Exception):
    """Base class for inventory errors."""


class TaskNotFound(InventoryError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTaskTransition(InventoryError):
    """A pause/resume/cancel/retry request that the task's state does not allow."""

    def __init__(self, task_id: str, status: str, operation: str, reason: str = ""):
        message = f"Cannot {operation} task {task_id} in state '{status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.task_id = task_id
        self.status = status
        self.operation = operation


class RetryBudgetExceeded(InventoryError):
    def __init__(self, task_id: str, max_retries: int):
        super().__init__(f"Task {task_id} has used all {max_retries} retries")
        self.task_id = task_id
        self.max_retries = max_retries


class WorkerNotRegistered(InventoryError):
    def __init__(self, task_type: str):
        super().__init__(f"No worker registered for task type: {task_type}")
        self.task_type = task_type


class ScanInProgress(InventoryError):
    def __init__(self, scope: str):
        super().__init__(f"A scan is already running for {scope}")
        self.scope = scope


class TaskAborted(InventoryError):
    """Raised inside a worker once its cancellation token has fired.

    The scheduler treats this as a clean stop, not a failure.
    """


class DownloadAborted(TaskAborted):
    def __init__(self, bytes_downloaded: int = 0):
        super().__init__(f"Download aborted after {bytes_downloaded} bytes")
        self.bytes_downloaded = bytes_downloaded
