"""Error taxonomy for export, validation and import."""

from __future__ import annotations


class BackupError(Exception):
    """Base class for backup/restore failures."""


class DecodeError(BackupError):
    """The archive cannot be read: not a ZIP, truncated, or structurally invalid."""


class WriteError(BackupError):
    """A whole entity-collection write failed during import."""

    def __init__(self, collection: str, cause: BaseException) -> None:
        super().__init__(f"Failed to write {collection}: {cause}")
        self.collection = collection
        self.cause = cause


class PolicyViolationError(BackupError):
    """A merge would have changed an identity-protected field."""

    def __init__(self, description: str, fields: list[str]) -> None:
        super().__init__(
            f"Merge refused for {description}: identity fields differ ({', '.join(fields)})"
        )
        self.fields = fields


class ImportRefusedError(BackupError):
    """The archive failed decoding or validation; no records were written."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Invalid backup: {'; '.join(errors)}")
        self.errors = errors


class ImportInProgressError(BackupError):
    """Another import holds the dataset lock."""


class StalenessWarning(UserWarning):
    """The live dataset changed between validation and import."""
