"""Audit files for template moves.

Each run writes two files to the output directory:
    OriginalTemplate-<timestamp>.json  - the template exactly as exported
    NewTemplate-<timestamp>.json       - the edited template that gets deployed

The timestamp uses the historical yyyy-MM-dd_hhmmss layout (12-hour clock).
If files for that timestamp already exist (a second run in the same second, or
the 01:00/13:00 collision of the 12-hour clock) a -1, -2, ... suffix is added;
existing audit files are never overwritten.

The edited template is always on disk before anything destructive happens so
a failed deployment can be retried by hand.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from azavset.template_model import Template

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%I%M%S"


def make_timestamp(now: datetime | None = None) -> str:
    """Format a timestamp for audit file and deployment names."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


class AuditStore:
    """Writes the original and edited templates for one run."""

    def __init__(self, output_dir: Path, timestamp: str) -> None:
        self.output_dir = Path(output_dir)
        self.timestamp = timestamp

        suffix = 0
        while self.original_path.exists() or self.new_path.exists():
            suffix += 1
            self.timestamp = f"{timestamp}-{suffix}"
        if suffix:
            logger.warning(
                f"Audit files for {timestamp} already exist in {self.output_dir}, "
                f"using {self.timestamp}"
            )

    @property
    def original_path(self) -> Path:
        return self.output_dir / f"OriginalTemplate-{self.timestamp}.json"

    @property
    def new_path(self) -> Path:
        return self.output_dir / f"NewTemplate-{self.timestamp}.json"

    def write_original(self, template_data: dict[str, Any]) -> Path:
        self._write(self.original_path, json.dumps(template_data, indent=4, ensure_ascii=False))
        logger.info(f"Original template saved to {self.original_path}")
        return self.original_path

    def write_new(self, template: Template) -> Path:
        self._write(self.new_path, template.to_json())
        logger.info(f"Edited template saved to {self.new_path}")
        return self.new_path

    def _write(self, path: Path, content: str) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(content + "\n", encoding="utf-8")
            temp_path.replace(path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise


__all__ = ["AuditStore", "TIMESTAMP_FORMAT", "make_timestamp"]
