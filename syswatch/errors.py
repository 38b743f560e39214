class SysWatchError(Exception):
    """Base class for all service errors."""


class SensorUnavailable(SysWatchError):
    def __init__(self, category: str, reason: str = ""):
        self.category = category
        self.reason = reason
        super().__init__(f"{category} sensor unavailable: {reason}" if reason else f"{category} sensor unavailable")


class StorageError(SysWatchError):
    def __init__(self, table: str, reason: str = ""):
        self.table = table
        self.reason = reason
        super().__init__(f"{table}: {reason}" if reason else table)


class StorageWriteFailed(StorageError):
    pass


class StorageReadFailed(StorageError):
    pass


class StorageInitError(StorageError):
    pass


class TransportSendFailed(SysWatchError):
    def __init__(self, client_id: str, reason: str = ""):
        self.client_id = client_id
        super().__init__(f"send to {client_id} failed: {reason}")


class ProtocolError(SysWatchError):
    """Malformed frame from a subscriber."""


class ConfigurationError(SysWatchError):
    """Request or configuration rejected at the boundary."""
