"""Error taxonomy for template sync, preview and deployment."""

from typing import Optional


class TrashSyncError(Exception):
    """Base class for all errors raised by the sync core."""


class CorruptDataError(TrashSyncError):
    """Stored data (template config, changelog, cache payload, backup) cannot be parsed."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class NotFoundError(TrashSyncError):
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ServiceMismatchError(TrashSyncError):
    def __init__(self, template_service: Optional[str], instance_service: Optional[str]):
        super().__init__(
            f"Service type mismatch: template is {template_service}, instance is {instance_service}"
        )
        self.template_service = template_service
        self.instance_service = instance_service


class ConflictError(TrashSyncError):
    """Specification mismatch that needs a resolution before it is applied."""

    def __init__(self, trash_id: str, message: str):
        super().__init__(message)
        self.trash_id = trash_id


class ConcurrencyError(TrashSyncError):
    def __init__(self, key: str):
        super().__init__(f"A deployment is already running for {key}")
        self.key = key


class RollbackUnavailableError(TrashSyncError):
    pass


class UpstreamFetchError(TrashSyncError):
    def __init__(self, config_type: str, service_type: str, reason: str):
        super().__init__(f"Failed to refresh {config_type} cache for {service_type}: {reason}")
        self.config_type = config_type
        self.service_type = service_type


class RemoteError(TrashSyncError):
    """Base class for failures talking to a remote instance or upstream."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteUnreachableError(RemoteError):
    pass


class RemoteTimeoutError(RemoteError):
    pass


class TransientRemoteError(RemoteError):
    """429 and 5xx responses; safe to retry with backoff."""


class FatalRemoteError(RemoteError):
    """401/403/404 and other client errors; never retried."""


def is_retryable(error: Exception) -> bool:
    return isinstance(error, TransientRemoteError)


def error_for_status(status_code: int, message: str) -> RemoteError:
    """Map an HTTP status code to the matching remote error type."""
    if status_code == 429 or status_code >= 500:
        return TransientRemoteError(message, status_code)
    return FatalRemoteError(message, status_code)
