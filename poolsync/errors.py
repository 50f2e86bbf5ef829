from __future__ import annotations


class PoolSyncError(Exception):
    pass


class ConfigurationError(PoolSyncError):
    """Fatal to the operation that found it (empty spec set, unknown group, bad config file)."""


class RemoteCallError(PoolSyncError):
    def __init__(self, message: str, method: str = "", path: str = ""):
        super().__init__(message)
        self.method = method
        self.path = path


class TransientRemoteError(RemoteCallError):
    def __init__(self, method: str, path: str, status_code: int):
        super().__init__(f"{method} {path} returned HTTP {status_code}", method, path)
        self.status_code = status_code


class RetryExhaustedError(RemoteCallError):
    def __init__(self, method: str, path: str, attempts: int, last_error: str):
        super().__init__(
            f"Max attempts ({attempts}) to the management API exceeded for {method} {path}: {last_error}",
            method,
            path,
        )
        self.attempts = attempts
        self.last_error = last_error


class MalformedResponseError(RemoteCallError):
    pass


class GatewayTimeoutError(RemoteCallError):
    pass


class CloudInventoryError(PoolSyncError):
    pass


class AddressNotYetAssignedError(PoolSyncError):
    def __init__(self, virtual_server: str, instance_id: str):
        super().__init__(f"No address assigned yet to instance '{instance_id}' ({virtual_server})")
        self.virtual_server = virtual_server
        self.instance_id = instance_id


class UnsupportedStructureError(PoolSyncError):
    """Nested group structures beyond one level of membership."""


class MalformedEventError(PoolSyncError):
    pass


class SyncAbortedError(PoolSyncError):
    def __init__(self, phase: str, cause: BaseException):
        super().__init__(f"Full sync aborted during {phase}: {type(cause).__name__}: {cause}")
        self.phase = phase
        self.cause = cause
