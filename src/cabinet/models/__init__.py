"""SQLModel database models for cabinet."""

from cabinet.models.accounts import DEFAULT_STORAGE_QUOTA, StorageAccount
from cabinet.models.files import (
    LIVE_FILE_STATUSES,
    PROVISIONAL_FILE_STATUSES,
    File,
    FileDownload,
    FileStatus,
    FileVersion,
)
from cabinet.models.folders import Folder
from cabinet.models.grants import Grant

__all__ = [
    "DEFAULT_STORAGE_QUOTA",
    "LIVE_FILE_STATUSES",
    "PROVISIONAL_FILE_STATUSES",
    "File",
    "FileDownload",
    "FileStatus",
    "FileVersion",
    "Folder",
    "Grant",
    "StorageAccount",
]
