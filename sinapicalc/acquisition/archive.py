"""Scratch workspace, archive extraction and reference-workbook lookup."""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
import zipfile
from pathlib import Path

from sinapicalc.errors import AcquisitionError

logger = logging.getLogger(__name__)

_MONTH_IN_NAME_RE = re.compile(r"(\d{4})[_-](\d{2})")

REFERENCE_MARKER = "refer"
WORKBOOK_SUFFIX = ".xlsx"


class ScratchWorkspace:
    """Unique scratch directory that is removed on exit, success or failure."""

    def __init__(self, base_dir: str | Path | None = None, prefix: str = "sinapi-"):
        self.base_dir = Path(base_dir) if base_dir else None
        self.prefix = prefix
        self.path: Path | None = None

    def __enter__(self) -> Path:
        if self.base_dir is not None:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.base_dir))
        return self.path

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path is not None:
            shutil.rmtree(self.path, ignore_errors=True)
            logger.debug("Removed scratch directory %s", self.path)
            self.path = None


def extract_archive(zip_path: Path, dest: Path) -> Path:
    """Extract a ZIP archive into ``dest``.

    Raises:
        AcquisitionError: If the file is not a readable ZIP archive
    """
    try:
        with zipfile.ZipFile(zip_path) as archive:
            archive.extractall(dest)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as e:
        raise AcquisitionError(f"Invalid or corrupt ZIP archive: {e}") from e
    return dest


def list_files(root: Path) -> list[str]:
    """All files under ``root`` as sorted POSIX paths relative to it."""
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


def find_reference_workbook(root: Path) -> Path:
    """Find the reference workbook anywhere under ``root``.

    The match is case-insensitive on the file name: it must contain the
    reference marker and end in ``.xlsx``. Depth is unbounded.

    Raises:
        AcquisitionError: If no file matches; the message lists every file found
    """
    for path in sorted(root.rglob("*")):
        name = path.name.lower()
        if path.is_file() and REFERENCE_MARKER in name and name.endswith(WORKBOOK_SUFFIX):
            return path

    found = list_files(root)
    raise AcquisitionError(
        "Reference workbook not found in archive. Files: "
        + (", ".join(found) if found else "(none)")
    )


def reference_month_from_name(name: str) -> str | None:
    """``SINAPI_Referência_2024_01.xlsx`` -> ``2024-01``; None if the name has no period."""
    match = _MONTH_IN_NAME_RE.search(name)
    if not match:
        return None
    year, month = match.groups()
    if not 1 <= int(month) <= 12:
        return None
    return f"{year}-{month}"
