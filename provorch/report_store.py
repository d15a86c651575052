"""
Last-run report persistence for the CLI.

The orchestration core never touches the filesystem; the CLI saves each
RunReport as state.json next to the log files so `provorch status` can show
it later.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from provorch.schemas import RunReport

logger = logging.getLogger(__name__)


def save_report(report: RunReport, path: Path) -> bool:
    """
    Write the report as JSON. Failures are logged, not raised.

    Returns:
        True if the report was written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp_path.write_text(report.to_json())
        tmp_path.replace(path)
    except OSError as e:
        logger.warning(
            f"Could not save run report: {e}",
            extra={"event": "state_save_failed", "metadata": {"error": str(e)}},
        )
        return False

    logger.debug(
        f"Saved run report to {path}",
        extra={"event": "state_saved", "metadata": {"file": str(path)}},
    )
    return True


def load_report(path: Path) -> Optional[RunReport]:
    """
    Load the last saved report.

    Returns:
        RunReport, or None if there is no readable report
    """
    if not path.exists():
        return None

    try:
        with open(path, "r") as f:
            return RunReport.from_dict(json.load(f))
    except (OSError, ValueError, KeyError) as e:
        logger.warning(
            f"Could not load run report: {e}",
            extra={"event": "state_load_failed", "metadata": {"file": str(path)}},
        )
        return None
