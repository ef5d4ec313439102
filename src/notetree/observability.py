"""Logging setup, per-operation metrics and tracing for the note engine.

Every traced engine call gets a short correlation id, a START/END pair of
debug lines carrying the note and placement ids it was called with, and an
entry in the process-wide `metrics` collector. Failures are counted by their
`ErrorCode` name so a client can tell a missing note from a broken cascade.
"""
import functools
import inspect
import logging
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from notetree.exceptions import NoteTreeError

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".notetree" / "logs"
LOG_FILE_NAME = "notetree.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

F = TypeVar('F', bound=Callable[..., Any])

# Arguments echoed into trace lines when a traced call receives them
TRACE_ARGUMENTS = ("note_id", "placement_id", "parent_note_id", "protect")


def _has_console_handler(target: logging.Logger) -> bool:
    return any(
        type(handler) is logging.StreamHandler for handler in target.handlers
    )


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``notetree`` logger hierarchy to a rotating log file.

    Args:
        log_dir: Where ``notetree.log`` is written. Defaults to ~/.notetree/logs/
        level: Level for the logger and its handlers
        max_bytes: Rotation threshold per file
        backup_count: Rotated files kept next to the live one
        console: Also echo to stderr (added once)

    Returns:
        The log directory actually used
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    package_logger = logging.getLogger("notetree")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = [
        RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console and not _has_console_handler(package_logger):
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.info(
        f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})"
    )
    return log_path


@dataclass
class OperationStats:
    """Running totals for one engine operation."""
    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0
    failures_by_code: Counter = field(default_factory=Counter)
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'count': self.calls,
            'success_count': self.calls - self.failures,
            'error_count': self.failures,
            'avg_duration_ms': round(self.total_ms / self.calls, 2) if self.calls else 0,
            'max_duration_ms': round(self.slowest_ms, 2),
            'errors_by_code': dict(self.failures_by_code),
            'last_error': self.last_error,
            'last_error_time': self.last_error_at.isoformat() if self.last_error_at else None,
        }


class MetricsCollector:
    """Thread-safe per-operation counters for the running process."""

    def __init__(self):
        self._lock = Lock()
        self._stats: Dict[str, OperationStats] = {}
        self._started_at = datetime.now(timezone.utc)

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        with self._lock:
            stats = self._stats.setdefault(operation, OperationStats())
            stats.calls += 1
            stats.total_ms += duration_ms
            stats.slowest_ms = max(stats.slowest_ms, duration_ms)
            if not success:
                stats.failures += 1
                stats.failures_by_code[error_code or "UNEXPECTED"] += 1
                stats.last_error = error
                stats.last_error_at = datetime.now(timezone.utc)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-operation snapshot, keyed by operation name."""
        with self._lock:
            return {name: stats.as_dict() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'uptime_seconds': (datetime.now(timezone.utc) - self._started_at).total_seconds(),
                'total_operations': sum(s.calls for s in self._stats.values()),
                'total_errors': sum(s.failures for s in self._stats.values()),
                'operations_tracked': sorted(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._started_at = datetime.now(timezone.utc)


metrics = MetricsCollector()


def _describe(values: Dict[str, Any]) -> str:
    return ', '.join(f'{k}={v}' for k, v in values.items())


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, log it under a correlation id and record it in `metrics`.

    The yielded dict collects result details for the END line:

        with timed_operation('delete_placement', placement_id=pid) as op:
            op['deleted_notes'] = count
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {'correlation_id': correlation_id}
    logger.debug(f"[{correlation_id}] START {operation} ({_describe(context)})")

    started = time.perf_counter()
    error: Optional[Exception] = None
    try:
        yield details
    except Exception as e:
        error = e
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        error_code = error.code.name if isinstance(error, NoteTreeError) else None
        metrics.record_operation(
            operation,
            elapsed_ms,
            error is None,
            str(error) if error is not None else None,
            error_code,
        )
        outcome = 'OK' if error is None else f'ERROR[{error_code or type(error).__name__}]: {error}'
        shown = {k: v for k, v in details.items() if k != 'correlation_id'}
        logger.debug(
            f"[{correlation_id}] END {operation} ({elapsed_ms:.2f}ms) [{outcome}] {_describe(shown)}"
        )


def trace_context(parameter_names, args, kwargs) -> Dict[str, Any]:
    """Pick the traced ids out of a call, whether passed by position or keyword."""
    supplied = dict(zip(parameter_names, args))
    supplied.update(kwargs)
    return {name: supplied[name] for name in TRACE_ARGUMENTS if name in supplied}


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Run the decorated function inside `timed_operation`.

    Ids named in TRACE_ARGUMENTS are echoed into the START line. A list or
    tuple result is logged by its length.
    """
    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__
        parameter_names = list(inspect.signature(func).parameters)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = trace_context(parameter_names, args, kwargs)
            with timed_operation(op_name, **context) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple)):
                    op['result_count'] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator
