"""Document export: file naming and writing of the joined output log."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    """Supported export file formats."""

    MARKDOWN = "md"
    TEXT = "txt"


def default_export_path(source_name: str, export_format: ExportFormat) -> Path:
    """``<source stem>.<format>`` in the working directory."""

    stem = Path(source_name).stem or "distillation"
    return Path(f"{stem}.{export_format.value}")


def write_export(path: Path, document: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(document, encoding="utf-8")
    logger.info("Exported %d characters to %s", len(document), path)
    return path
