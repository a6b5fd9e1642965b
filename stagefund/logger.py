"""
StageFund Logging Setup
=======================

Library modules log through ``logging.getLogger(__name__)`` and never
install handlers; the package root only carries a NullHandler. The
``stagefund`` command calls :func:`configure_logging`, which attaches a rich
console handler (and, when LOG_FILE_OUTPUT is set, a rotating file) to the
``stagefund`` logger. The root logger and any handlers a host application
installed are left alone.

Usage:
    >>> from stagefund.logger import configure_logging
    >>> configure_logging("DEBUG")
"""

import logging
import logging.handlers
import re
import time
from pathlib import Path
from typing import List, Optional, Union

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_DATE_FORMAT,
    LOG_FILE_OUTPUT,
    LOG_FORMAT,
    LOG_LEVEL,
    LOG_MAX_FILE_SIZE,
)

PACKAGE_LOGGER = "stagefund"
LOG_FILE_PATH = Path(__file__).parent.parent / "logs" / "stagefund.log"

STAGEFUND_THEME = Theme(
    {
        "stagefund.arrow":          "bold yellow",
        "stagefund.amount":         "bold cyan",
        "stagefund.bps":            "cyan",
        "stagefund.level_critical": "bold red reverse",
        "stagefund.level_debug":    "bold dim",
        "stagefund.level_error":    "bold red",
        "stagefund.level_info":     "bold green",
        "stagefund.level_warning":  "bold yellow",
        "stagefund.logger_name":    "magenta",
        "stagefund.milestone":      "bold magenta",
        "stagefund.outcome_passed": "bold green",
        "stagefund.outcome_failed": "bold red",
        "stagefund.phase":          "bold white",
        "stagefund.tag":            "bold magenta",
        "stagefund.timestamp":      "bold cyan",
    }
)

# Handlers owned by configure_logging; a later call swaps them out
_installed: List[logging.Handler] = []


class StageFundLogHighlighter(RegexHighlighter):
    """
    Custom Rich Highlighter for escrow and governance logs.

    Colors milestone references, basis-point figures, amounts, campaign
    phases and vote outcomes.
    """

    base_style = "stagefund."
    highlights = [
        r"(?P<arrow>(\-\->)|(<--)|(→))",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<milestone>Milestone #\d+)",
        r"(?P<bps>\b\d+\s?bps\b)",
        r"(?P<amount>\bamount=\d+\b)",
        r"(?P<phase>\b(FUNDING|SUCCEEDED|FAILED|COMPLETED)\b)",
        r"(?P<outcome_passed>\bPASSED\b)",
        r"(?P<outcome_failed>\bREJECTED\b)",
        r"(?P<tag>\[.*?\])",
        r"(?P<timestamp>^(.*?)UTC)",
    ]


class CallerSafeFormatter(logging.Formatter):
    """
    UTC formatter that drops terminal escapes from the rendered line.

    Caller identities come straight from replay scripts into log messages;
    ANSI sequences and control bytes other than tab and newline are removed.
    """

    converter = time.gmtime
    _unsafe = re.compile(r"\x1b(?:\[[0-?]*[ -/]*[@-~]|[@-Z\\-_])|[\x00-\x08\x0b-\x1f\x7f]")

    @classmethod
    def strip(cls, text: str) -> str:
        return cls._unsafe.sub("", text)

    def format(self, record: logging.LogRecord) -> str:
        return self.strip(super().format(record))


def resolve_format(log_format) -> str:
    """*log_format* if it renders a sample record, else the LOG_FORMAT default."""
    if log_format:
        sample = logging.LogRecord(PACKAGE_LOGGER, logging.INFO, __file__, 0, "sample", (), None)
        try:
            logging.Formatter(fmt=str(log_format)).format(sample)
            return str(log_format)
        except (ValueError, KeyError, TypeError):
            pass
    return str(LOG_FORMAT.default())


def resolve_date_format(date_format) -> str:
    """*date_format* if it is a usable strftime pattern, else the LOG_DATE_FORMAT default."""
    if date_format and "%" in str(date_format):
        try:
            time.strftime(str(date_format), time.gmtime(0))
            return str(date_format)
        except ValueError:
            pass
    return str(LOG_DATE_FORMAT.default())


def _console_handler() -> logging.Handler:
    if not LOG_CONSOLE_HIGHLIGHTING:
        return logging.StreamHandler()
    return RichHandler(
        console=Console(theme=STAGEFUND_THEME, highlight=False, stderr=True),
        highlighter=StageFundLogHighlighter(),
        keywords=[],
        rich_tracebacks=True,
        omit_repeated_times=False,
        show_path=False,
        show_time=False,
        show_level=False,
        markup=False,
    )


def reset_logging() -> None:
    """Remove the handlers configure_logging installed and resume propagation."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in _installed:
        package_logger.removeHandler(handler)
        handler.close()
    _installed.clear()
    package_logger.propagate = True


def configure_logging(
    level: Optional[str] = None,
    *,
    console: bool = True,
    file_output: Optional[bool] = None,
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """
    Attach stagefund's handlers to the ``stagefund`` logger.

    Calling it again replaces the handlers from the previous call. While
    handlers are attached, records do not propagate to the root logger.

    Args:
        level: Level name; defaults to LOG_LEVEL from ``.env``
        console: Log to stderr (rich when LOG_CONSOLE_HIGHLIGHTING is on)
        file_output: Also log to a rotating file; defaults to LOG_FILE_OUTPUT
        log_file: File path; defaults to ``logs/stagefund.log``

    Returns:
        The configured ``stagefund`` logger.
    """
    reset_logging()
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    numeric_level = getattr(logging, str(level or LOG_LEVEL).upper(), logging.INFO)

    log_format = resolve_format(LOG_FORMAT)
    date_format = resolve_date_format(LOG_DATE_FORMAT)
    formatter = CallerSafeFormatter(fmt=log_format, datefmt=date_format + " UTC")

    handlers: List[logging.Handler] = []
    if console:
        handlers.append(_console_handler())

    if file_output is None:
        file_output = bool(LOG_FILE_OUTPUT)
    if file_output:
        path = Path(log_file) if log_file is not None else LOG_FILE_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=str(path),
                maxBytes=LOG_MAX_FILE_SIZE,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
        _installed.append(handler)

    package_logger.setLevel(numeric_level)
    package_logger.propagate = not handlers

    if log_format != str(LOG_FORMAT):
        package_logger.warning(f"LOG_FORMAT {str(LOG_FORMAT)!r} is not usable, using the default")
    if date_format != str(LOG_DATE_FORMAT):
        package_logger.warning(f"LOG_DATE_FORMAT {str(LOG_DATE_FORMAT)!r} is not usable, using the default")
    return package_logger
