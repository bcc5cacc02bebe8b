"""Export convenience function."""

import logging
from pathlib import Path

from mdnote.batch.models import LibraryStats, ParseTask
from mdnote.exporters.report import (
    export_library_stats_csv,
    export_library_stats_excel,
    export_tasks_csv,
    export_tasks_excel,
)

logger = logging.getLogger(__name__)


def export_all(
    output_dir: str,
    tasks: list[ParseTask] | None = None,
    stats: LibraryStats | None = None,
) -> dict:
    """Write every available report and return dict of file paths created."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    paths = {}

    if tasks is not None:
        tasks_csv_path = str(out / "batch_tasks.csv")
        export_tasks_csv(tasks, tasks_csv_path)
        paths["tasks_csv"] = tasks_csv_path

        tasks_xlsx_path = str(out / "batch_tasks.xlsx")
        export_tasks_excel(tasks, tasks_xlsx_path)
        paths["tasks_xlsx"] = tasks_xlsx_path

    if stats is not None:
        stats_csv_path = str(out / "library_stats.csv")
        export_library_stats_csv(stats, stats_csv_path)
        paths["stats_csv"] = stats_csv_path

        stats_xlsx_path = str(out / "library_stats.xlsx")
        export_library_stats_excel(stats, stats_xlsx_path)
        paths["stats_xlsx"] = stats_xlsx_path

    logger.info("All exports written to %s", output_dir)
    return paths
