"""Error taxonomy for the upload core.

Every error carries the HTTP status it maps to, a stable ``error_code`` and a
``retry_action`` telling the client what to do next:

- ``fix_request``: the request itself is malformed, nothing was stored.
- ``retry_chunk``: resend the same chunk.
- ``restart_upload``: resend every chunk of the file.
"""

from __future__ import annotations


class UploadError(Exception):
    status_code = 500
    error_code = "internal_error"
    retry_action: str | None = None

    def __init__(self, detail: str, *, file_name: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.file_name = file_name


class ClientProtocolError(UploadError):
    """Malformed index, total, file name or missing payload."""

    status_code = 400
    error_code = "client_protocol_error"
    retry_action = "fix_request"


class InvalidFileName(ClientProtocolError):
    error_code = "invalid_file_name"


class TotalMismatch(ClientProtocolError):
    """A chunk declared a different total than the one adopted for its upload."""

    status_code = 409
    error_code = "total_mismatch"


class AssemblyInProgress(ClientProtocolError):
    """A chunk arrived while the file's chunks were being merged."""

    status_code = 409
    error_code = "assembly_in_progress"


class StorageUnavailable(UploadError):
    status_code = 503
    error_code = "storage_unavailable"
    retry_action = "retry_chunk"


class CannotCreateSlot(StorageUnavailable):
    pass


class WriteFailed(StorageUnavailable):
    error_code = "write_failed"


class IncompleteAssembly(UploadError):
    """A completion was declared but a required chunk slot was absent at merge time."""

    error_code = "incomplete_assembly"
    retry_action = "restart_upload"


class MissingSlot(IncompleteAssembly):
    def __init__(self, detail: str, *, file_name: str | None = None, index: int | None = None) -> None:
        super().__init__(detail, file_name=file_name)
        self.index = index


class MergeWriteFailed(UploadError):
    error_code = "merge_failed"
    retry_action = "restart_upload"


class NotFound(UploadError):
    status_code = 404
    error_code = "not_found"


class CleanupWarning(Warning):
    """A chunk slot could not be removed after a successful merge.

    Never raised to callers; collected on the merge result so the orphan can be
    swept later.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
