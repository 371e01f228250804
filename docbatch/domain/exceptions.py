class DocbatchError(Exception):
    """Base exception for all batch pipeline errors."""


class ValidationError(DocbatchError):
    """Raised when caller input is rejected. Never retried."""


class StorageError(DocbatchError):
    """Raised when persisting a record fails."""


class StateError(DocbatchError):
    """Raised when an update would violate a processing record invariant."""


class DuplicateDispatchError(StateError):
    """Raised when files are already attached to an active processing record."""


class ConcurrentUpdateError(StateError):
    """Raised when a compare-and-swap update keeps losing to concurrent writers."""


class ProcessingNotFoundError(DocbatchError):
    """Raised when a processing record cannot be found."""


class DispatchError(DocbatchError):
    """Base exception for failures talking to the external worker."""


class TransientDispatchError(DispatchError):
    """Raised on connection failures, timeouts and 5xx responses."""


class PermanentDispatchError(DispatchError):
    """Raised on 4xx responses and explicit worker rejections."""


class ArtifactDownloadError(DocbatchError):
    """Raised when a result artifact cannot be retrieved."""
