"""Runtime configuration handed to ``Cabinet`` at construction."""

from __future__ import annotations

from dataclasses import dataclass

from cabinet.models.accounts import DEFAULT_STORAGE_QUOTA

DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024  # 100 MiB


@dataclass(frozen=True)
class CabinetConfig:
    """Settings for one ``Cabinet`` instance.

    Attributes:
        storage_timeout: Seconds allowed for any object storage call.
        risk_timeout: Seconds allowed for a risk assessment.
        read_url_ttl: Lifetime of download URLs, in seconds.
        default_quota: Quota assigned to storage accounts on first use.
        max_file_size: Largest accepted upload, in bytes.
        upload_area: Storage area for admitted content.
        quarantine_area: Storage area for quarantined content.
        default_page_size: Page size when a listing or search gives none.
        max_page_size: Upper bound on a requested page size.
    """

    storage_timeout: float = 30.0
    risk_timeout: float = 30.0
    read_url_ttl: int = 3600
    default_quota: int = DEFAULT_STORAGE_QUOTA
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    upload_area: str = "uploads"
    quarantine_area: str = "quarantine"
    default_page_size: int = 20
    max_page_size: int = 100
    default_quarantine_reason: str = "Suspicious content detected"
    default_restore_reason: str = "False positive"
