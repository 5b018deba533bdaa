from typing import Iterable


class SidekickError(Exception):
    pass


class RetryableError(SidekickError):
    """Expected under concurrent reconciliation; the key is requeued and the status left alone."""


class ConflictError(RetryableError):
    pass


class AlreadyExistsError(ConflictError):
    pass


class LockUnavailableError(RetryableError):
    def __init__(self, key: str, holder: str | None = None) -> None:
        self.key = key
        self.holder = holder
        super().__init__(f"unable to acquire lock {key}" + (f" (held by {holder})" if holder else ""))


class TransientError(RetryableError):
    pass


class CollaboratorError(RetryableError):
    """A dependency outside the store failed (probe, lock provider)."""


class ProbeError(CollaboratorError):
    pass


class LockProviderError(CollaboratorError):
    pass


class NotFoundError(SidekickError):
    pass


class InvalidStateError(SidekickError):
    pass


class FormatError(SidekickError):
    pass


class NotOwnedError(SidekickError):
    def __init__(self, kind: str, names: Iterable[str]) -> None:
        self.kind = kind
        self.names = sorted(names)
        super().__init__(f"there is an existing {kind} {', '.join(self.names)} that we do not own")
