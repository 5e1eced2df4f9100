"""Export sink: turn extracted records into a downloadable artifact.

The orchestrator hands the sink records that were already extracted
from the page (a list of flat string dictionaries) and receives the
artifact location back.  ``CsvExportSink`` writes a CSV file named after
the export and the UTC time of writing::

    exports/price_tips_20250101_120000.csv
"""

from __future__ import annotations

import csv
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from webflow_agent.config.settings import Settings

logger = logging.getLogger(__name__)


class ExportSink(ABC):
    """Consumer of extracted records."""

    @abstractmethod
    def export(self, records: list[dict[str, Any]], name: str) -> str:
        """Produce an artifact from *records*.

        Args:
            records: Flat records; keys become columns.
            name: Base name of the artifact.

        Returns:
            Location of the produced artifact.
        """


class CsvExportSink(ExportSink):
    """Writes records as a CSV file under ``settings.export_dir``.

    Columns are the union of record keys in first-seen order; missing
    values are written as empty cells.
    """

    def __init__(self, settings: Settings) -> None:
        self._directory = Path(settings.export_dir)

    def export(self, records: list[dict[str, Any]], name: str) -> str:
        columns: list[str] = []
        for record in records:
            for key in record:
                if key not in columns:
                    columns.append(key)

        self._directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        path = self._directory / f"{name or 'export'}_{stamp}.csv"
        with path.open("w", encoding="utf-8", newline="") as fh:
            writer = csv.DictWriter(fh, fieldnames=columns, restval="")
            writer.writeheader()
            writer.writerows(records)

        logger.info("exported %d records to %s", len(records), path)
        return str(path)
