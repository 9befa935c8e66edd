from typing import Any

# ----------------------------
# Error taxonomy
# ----------------------------


class HibernationError(Exception):
    """
    Base class for every error surfaced by the hibernation protocol.
    """

    code = "HibernationError"
    exit_code = 1

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransientStoreError(HibernationError):
    """Object store temporarily unavailable; safe to retry."""

    code = "TransientStoreError"
    exit_code = 2


class StoreRequestError(HibernationError):
    """Object store rejected a request that retrying will not fix."""

    code = "StoreRequestError"
    exit_code = 3


class ObjectAlreadyExistsError(HibernationError):
    code = "ObjectAlreadyExists"
    exit_code = 3

    def __init__(self, ref: Any):
        super().__init__(f"{ref} already exists")
        self.ref = ref


class TeardownIncompleteError(HibernationError):
    code = "TeardownIncompleteError"
    exit_code = 4

    def __init__(self, remaining: list[Any], timeout: float):
        names = ", ".join(str(r) for r in remaining)
        super().__init__(
            f"{len(remaining)} resource(s) still present after {timeout:g}s: {names}"
        )
        self.remaining = list(remaining)
        self.timeout = timeout


class SerializationError(HibernationError):
    code = "SerializationError"
    exit_code = 5


class ManifestCorruptError(HibernationError):
    code = "ManifestCorruptError"
    exit_code = 5


class NoHibernatedClusterError(HibernationError):
    code = "NoHibernatedClusterError"
    exit_code = 6


class ReadinessTimeoutError(HibernationError):
    code = "ReadinessTimeoutError"
    exit_code = 7

    def __init__(self, cluster_ref: Any, timeout: float, phase: str | None):
        super().__init__(
            f"{cluster_ref} not ready after {timeout:g}s "
            f"(last observed phase: {phase or 'unknown'})"
        )
        self.cluster_ref = cluster_ref
        self.timeout = timeout
        self.phase = phase


class ClusterNotFoundError(HibernationError):
    code = "ClusterNotFoundError"
    exit_code = 8


class InconsistentStateError(HibernationError):
    code = "InconsistentStateError"
    exit_code = 9


class StatusSchemaError(HibernationError):
    code = "StatusSchemaError"
    exit_code = 10


class ConfigError(HibernationError):
    code = "ConfigError"
    exit_code = 11
