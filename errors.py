class SwoleError(Exception):
    """Base error for the tracker backend."""


class WhoopApiError(SwoleError):
    def __init__(self, endpoint, status_code=None, detail=""):
        self.endpoint = endpoint
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"WHOOP API call to {endpoint} failed ({status_code}): {detail}")


class QueueStorageError(SwoleError):
    """Raised when the offline queue file cannot be written."""
