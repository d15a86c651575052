"""
Utility functions for provorch.

Includes logging setup, console output and formatting of run results.

Log records carry provorch context through `extra=`:

    logger.info("Service daemon is healthy", extra={
        "event": "service_healthy", "service": "daemon", "metadata": {"attempts": 2},
    })

StructuredFormatter writes those fields as one JSON object per line. Values
with a to_dict() (ErrorInfo, StageOutcome, ServiceSnapshot, RunReport) and
enums (StageStatus, ServiceState, ErrorKind) are serialized as data.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler

from provorch.errors import ProvorchError
from provorch.schemas import ErrorInfo, ServiceSnapshot

# Global console for pretty output
console = Console()

CONTEXT_FIELDS = ("run_id", "stage", "service", "event", "metadata")


def setup_logging(log_file: Path, log_level: str = "INFO", log_format: str = "structured", console_output: bool = True) -> logging.Logger:
    """
    Set up logging for a provisioning run.

    Args:
        log_file: Path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.parent.chmod(0o700)

    logger = logging.getLogger("provorch")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    file_handler = logging.FileHandler(log_file)
    if log_format == "structured":
        file_handler.setFormatter(StructuredFormatter())
    else:
        file_handler.setFormatter(ScopedFormatter("%(asctime)s - %(name)s - %(levelname)s - %(scope)s%(message)s"))
    logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(ScopedFormatter("%(levelname)s: %(scope)s%(message)s"))
        logger.addHandler(console_handler)

    return logger


def to_jsonable(value: Any) -> Any:
    """json.dumps default: provorch records become dicts, enums their value."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            exc = record.exc_info[1]
            if isinstance(exc, ProvorchError):
                log_data["error"] = ErrorInfo.from_exception(exc)
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=to_jsonable)


class ScopedFormatter(logging.Formatter):
    """Plain-text formatter that prefixes the stage/service a record belongs to."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [getattr(record, "stage", None), getattr(record, "service", None)]
        scope = "/".join(p for p in parts if p)
        record.scope = f"[{scope}] " if scope else ""
        return super().format(record)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "250ms", "45s", "1m 23s")
    """
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


STATUS_STYLES = {
    "succeeded": "green",
    "healthy": "green",
    "failed": "red",
    "skipped": "yellow",
    "not_started": "dim",
    "starting": "cyan",
    "probing": "cyan",
}


def styled_status(value: str) -> str:
    """Wrap a status value in rich markup."""
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def describe_error(error: Optional[ErrorInfo]) -> str:
    """One-line rendering of an ErrorInfo for tables and console messages."""
    if error is None:
        return ""
    return f"{error.kind.value}: {error.message}"


def describe_service(service: ServiceSnapshot) -> str:
    """Error if the service failed, otherwise what its last probe saw."""
    if service.error is not None:
        return describe_error(service.error)
    return service.last_detail or ""


def print_banner(title: str) -> None:
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def print_info(message: str) -> None:
    console.print(f"[bold cyan]ℹ[/bold cyan] {message}")
