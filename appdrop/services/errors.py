"""Domain errors raised by the release ingestion pipeline.

Everything here aborts the ingestion before commit. Webhook delivery
failures are deliberately absent: they never reach the uploader.
"""

from typing import Optional

from appdrop.services.package_info import ParseError, ParseErrorKind


class IngestError(Exception):
    """Base class for failures that reject an upload."""


class PackageRejectedError(IngestError):
    """The metadata extractor could not interpret the uploaded package."""

    def __init__(self, error: ParseError):
        self.error = error
        super().__init__(self.public_message)

    @property
    def kind(self) -> ParseErrorKind:
        return self.error.kind

    @property
    def public_message(self) -> str:
        if self.error.kind == ParseErrorKind.UNSUPPORTED_FILE_TYPE:
            return "Unsupported package file type"
        if self.error.kind == ParseErrorKind.MALFORMED_PACKAGE:
            return (
                "Could not parse the package, make sure it is a supported "
                "file type and is not protected by a hardening tool"
            )
        return "Could not parse the package"


class BundleMismatchError(IngestError):
    """Package bundle id differs from the one the channel enforces."""

    def __init__(self, expected: str, actual: Optional[str], channel_id: str):
        self.expected = expected
        self.actual = actual
        self.channel_id = channel_id
        super().__init__(
            f"bundle id `{actual}` not matched with `{expected}` in channel {channel_id}"
        )


class IdentityConflictError(IngestError):
    """Kept losing the find-or-create race for an identity row."""

    def __init__(self, entity: str, attempts: int):
        self.entity = entity
        self.attempts = attempts
        super().__init__(f"Could not resolve {entity} after {attempts} attempts")


class PersistenceError(IngestError):
    """The ingestion transaction could not be committed."""


class UploadTooLargeError(IngestError):
    """The uploaded file exceeds ``settings.max_upload_size``."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Upload exceeds the {limit} byte limit")
