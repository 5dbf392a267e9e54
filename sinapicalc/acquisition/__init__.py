"""Obtaining the SINAPI reference archive (remote download or upload)."""

from sinapicalc.acquisition.archive import (
    ScratchWorkspace,
    extract_archive,
    find_reference_workbook,
    reference_month_from_name,
)
from sinapicalc.acquisition.http import ArchiveDownloader, build_download_url

__all__ = [
    "ArchiveDownloader",
    "ScratchWorkspace",
    "build_download_url",
    "extract_archive",
    "find_reference_workbook",
    "reference_month_from_name",
]
