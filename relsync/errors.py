"""Exceptions raised by the reconciliation engine."""
from typing import List, Sequence

__all__ = [
    "RelsyncError",
    "ClusterError",
    "NotFoundError",
    "NoSuchKindError",
    "ImmutableError",
    "ResourceValidationError",
    "DuplicateResourceError",
    "AdoptionError",
    "DiffError",
    "MultiError",
]


class RelsyncError(Exception):
    """Generic base exception used for this library."""


class ClusterError(RelsyncError):
    """Raised when the K8s API rejected a request or could not be reached."""

    def __init__(self, op: str, human_id: str, code: int = -1,
                 message: str = "", reason: str = "") -> None:
        self.op = op
        self.human_id = human_id
        self.code = code
        self.reason = reason
        self.message = message
        super().__init__(
            f"{op} {human_id} failed ({code} {reason}): {message or 'Unknown error'}"
        )


class NotFoundError(ClusterError):
    """Raised when the resource does not exist on the cluster."""


class NoSuchKindError(ClusterError):
    """Raised when the cluster does not know the resource kind (yet)."""

    def __init__(self, op: str, human_id: str, api_version: str, kind: str) -> None:
        super().__init__(
            op, human_id, code=-1, reason="NoSuchKind",
            message=f"no REST mapping for {kind} in {api_version}",
        )
        self.api_version = api_version
        self.kind = kind


class ImmutableError(ClusterError):
    """Raised when the server refused to change an immutable field."""


class ResourceValidationError(RelsyncError):
    """Raised when a resource declares malformed annotations or labels."""

    def __init__(self, human_id: str, message: str) -> None:
        super().__init__(f"invalid resource {human_id}: {message}")
        self.human_id = human_id
        self.message = message


class DuplicateResourceError(RelsyncError):
    """Raised when the same resource is declared more than once."""


class AdoptionError(RelsyncError):
    """Raised when an existing resource belongs to somebody else."""

    def __init__(self, human_id: str, reason: str) -> None:
        super().__init__(f"resource {human_id} is not adoptable: {reason}")
        self.human_id = human_id
        self.reason = reason


class DiffError(RelsyncError):
    """Raised when the live and desired objects cannot be compared."""


class MultiError(RelsyncError):
    """Bundle several errors into one."""

    def __init__(self, msg: str, errors: Sequence[Exception]) -> None:
        self.errors: List[Exception] = list(errors)
        lines = [f"{msg}:"] + [f"  * {err}" for err in self.errors]
        super().__init__(str.join("\n", lines))


def multierror(msg: str, errors: Sequence[Exception]) -> None:
    """Raise a `MultiError` unless `errors` is empty."""
    if errors:
        raise MultiError(msg, errors)
