# drawdown_trading/utils.py
"""
Utility Functions for the Drawdown Trading Engine

Provides common utilities including:
- Whole-operation retry wrapper
- Audit logging
- Date/time helpers (calendar day in the reference timezone)
- File operations with locking
- Trade ID generation
- Formatting and P&L helpers
"""

import os
import json
import time
import logging
import fcntl
import tempfile
import hashlib
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, Type, TypeVar

import pytz

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _get_lock_file(filepath: str) -> str:
    """Get the lock file path for a given file."""
    return f"{filepath}.lock"


# =============================================================================
# RETRY
# =============================================================================

@dataclass
class RetryResult(Generic[T]):
    """Outcome of with_retry: either a value or the last error."""
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    def unwrap(self) -> T:
        if not self.ok:
            raise self.error
        return self.value


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 2.0,
    name: str = 'operation',
    sleep: Callable[[float], None] = time.sleep,
    no_retry: Tuple[Type[BaseException], ...] = ()
) -> RetryResult[T]:
    """
    Run an operation, re-running it from scratch on failure.

    The delay between attempts is fixed. Nothing is raised: the caller
    receives a RetryResult with either the value or the last error.

    Args:
        operation: Zero-argument callable
        max_attempts: Total number of attempts (>= 1)
        base_delay: Seconds to wait between attempts
        name: Name for logging
        sleep: Sleep function (injectable for tests)
        no_retry: Exception types that end the loop on first occurrence

    Returns:
        RetryResult
    """
    last_error = None

    for attempt in range(1, max_attempts + 1):
        try:
            value = operation()
            return RetryResult(ok=True, value=value, attempts=attempt)
        except no_retry as e:
            logger.warning(f"⚠️ {name} failed without retry: {e}")
            return RetryResult(ok=False, error=e, attempts=attempt)
        except Exception as e:
            last_error = e
            logger.warning(f"⚠️ {name} failed (attempt {attempt}/{max_attempts}): {e}")
            if attempt < max_attempts:
                logger.info(f"Retrying {name} in {base_delay:.1f}s...")
                sleep(base_delay)

    return RetryResult(ok=False, error=last_error, attempts=max_attempts)


# =============================================================================
# AUDIT LOGGING
# =============================================================================

def log_audit_event(
    audit_file: str,
    event_type: str,
    data: Dict[str, Any],
    outcome: str = 'SUCCESS'
) -> None:
    """
    Log an audit event to the permanent audit trail.

    Uses JSONL format (one JSON object per line) for append-only efficiency.
    Uses file locking to prevent corruption from concurrent writes.

    Args:
        audit_file: Path to the JSONL audit log
        event_type: Type of event (QUOTE_CREATED, TRADE_OPENED, etc.)
        data: Event data dictionary
        outcome: SUCCESS, FAILURE, WARNING, ERROR or CRITICAL
    """
    event = {
        'timestamp': utc_now().isoformat(),
        'event_type': event_type,
        'outcome': outcome,
        'data': data
    }

    lock_file = _get_lock_file(audit_file)

    try:
        os.makedirs(os.path.dirname(audit_file) or '.', exist_ok=True)
        with open(lock_file, 'w') as lf:
            fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
            try:
                with open(audit_file, 'a') as f:
                    f.write(json.dumps(event, default=str) + '\n')
            finally:
                fcntl.flock(lf.fileno(), fcntl.LOCK_UN)
    except Exception as e:
        logger.error(f"Failed to write audit log: {e}")
        # Don't raise - audit failure shouldn't stop trading


def read_recent_audit_events(
    audit_file: str,
    event_type: Optional[str] = None,
    limit: int = 100
) -> List[Dict[str, Any]]:
    """
    Read recent audit events from the log.

    Returns:
        List of event dictionaries (most recent first)
    """
    if not os.path.exists(audit_file):
        return []

    events = []
    try:
        with open(audit_file, 'r') as f:
            lines = f.readlines()

        for line in reversed(lines):
            if len(events) >= limit:
                break

            try:
                event = json.loads(line.strip())
                if event_type is None or event.get('event_type') == event_type:
                    events.append(event)
            except json.JSONDecodeError:
                continue

    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")

    return events


# =============================================================================
# TRADE ID GENERATION
# =============================================================================

def generate_trade_id(
    side: str,
    quote_id: str,
    timestamp: Optional[datetime] = None
) -> str:
    """
    Generate a unique trade ID.

    Format: {SIDE}_{QUOTE_ID}_{YYYYMMDD}-{HHMMSS}-{HASH}
    """
    if timestamp is None:
        timestamp = utc_now()

    base = f"{side}_{quote_id}_{timestamp.strftime('%Y%m%d-%H%M%S')}"
    short_hash = hashlib.md5(f"{base}-{timestamp.microsecond}".encode()).hexdigest()[:6]

    return f"{base}-{short_hash}"


# =============================================================================
# DATE/TIME HELPERS
# =============================================================================

def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def get_local_now(tz_name: str, now: Optional[datetime] = None) -> datetime:
    """Current time in the reference timezone."""
    tz = pytz.timezone(tz_name)
    if now is None:
        return datetime.now(tz)
    return ensure_utc(now).astimezone(tz)


def start_of_day(tz_name: str, now: Optional[datetime] = None) -> datetime:
    """
    Start of the current calendar day in the reference timezone, as UTC.

    Args:
        tz_name: pytz timezone name (e.g. 'Europe/Paris')
        now: Reference instant (defaults to the current time)
    """
    tz = pytz.timezone(tz_name)
    local = get_local_now(tz_name, now)
    midnight = tz.localize(datetime(local.year, local.month, local.day))
    return midnight.astimezone(timezone.utc)


def day_bounds(tz_name: str, day: date) -> Tuple[datetime, datetime]:
    """[start, end) of a calendar day in the reference timezone, as UTC."""
    tz = pytz.timezone(tz_name)
    start = tz.localize(datetime(day.year, day.month, day.day))
    following = day + timedelta(days=1)
    end = tz.localize(datetime(following.year, following.month, following.day))
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime) into aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def hours_ago(hours: float, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) - timedelta(hours=hours)


# =============================================================================
# FILE OPERATIONS (with file locking for concurrent access safety)
# =============================================================================

def read_json_file(filepath: str, default: Any = None) -> Any:
    """
    Load a JSON file under a shared lock, raising on unreadable content.

    Missing files return the default.
    """
    if not os.path.exists(filepath):
        return default

    lock_file = _get_lock_file(filepath)
    os.makedirs(os.path.dirname(filepath) or '.', exist_ok=True)

    with open(lock_file, 'w') as lf:
        # Acquire shared lock (allows multiple readers)
        fcntl.flock(lf.fileno(), fcntl.LOCK_SH)
        try:
            with open(filepath, 'r') as f:
                return json.load(f)
        finally:
            fcntl.flock(lf.fileno(), fcntl.LOCK_UN)


def load_json_file(filepath: str, default: Any = None) -> Any:
    """
    Safely load a JSON file with file locking.

    Args:
        filepath: Path to JSON file
        default: Default value if file doesn't exist or is invalid

    Returns:
        Parsed JSON data or default
    """
    try:
        return read_json_file(filepath, default)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in {filepath}: {e}")
        return default
    except OSError as e:
        logger.error(f"Failed to load {filepath}: {e}")
        return default


def save_json_file(filepath: str, data: Any, indent: int = 2) -> bool:
    """
    Safely save data to a JSON file with file locking.

    Uses exclusive lock and atomic write (write to temp, then rename).

    Returns:
        True if successful
    """
    dir_path = os.path.dirname(filepath) or '.'
    lock_file = _get_lock_file(filepath)

    try:
        os.makedirs(dir_path, exist_ok=True)
        with open(lock_file, 'w') as lf:
            # Acquire exclusive lock (blocks other readers and writers)
            fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
            try:
                temp_fd, temp_path = tempfile.mkstemp(
                    dir=dir_path,
                    prefix='.tmp_',
                    suffix='.json'
                )
                try:
                    with os.fdopen(temp_fd, 'w') as f:
                        json.dump(data, f, indent=indent, default=str)

                    # Atomic rename (on same filesystem)
                    os.replace(temp_path, filepath)
                    return True

                except Exception:
                    if os.path.exists(temp_path):
                        os.unlink(temp_path)
                    raise

            finally:
                fcntl.flock(lf.fileno(), fcntl.LOCK_UN)

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save {filepath}: {e}")
        return False


# =============================================================================
# FORMATTING HELPERS
# =============================================================================

def format_currency(value: Optional[float], currency: str = 'EUR') -> str:
    """Format a value as a fiat amount."""
    if value is None:
        return f"0.00 {currency}"
    return f"{value:,.2f} {currency}"


def format_percentage(value: Optional[float], include_sign: bool = True) -> str:
    """Format a value as percentage."""
    if value is None:
        return "0.00%"

    if include_sign and value > 0:
        return f"+{value:.2f}%"
    return f"{value:.2f}%"


# =============================================================================
# CALCULATION HELPERS
# =============================================================================

def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def calculate_pnl_pct(entry_price: float, exit_price: float) -> float:
    """Calculate P&L percentage."""
    if entry_price <= 0:
        return 0.0
    return ((exit_price - entry_price) / entry_price) * 100


def calculate_drawdown_pct(price: float, reference_high: Optional[float]) -> float:
    """Percentage distance of price below a reference high (negative when below)."""
    if not reference_high:
        return 0.0
    return ((price - reference_high) / reference_high) * 100


def calculate_target_price(entry_price: float, target_pct: float) -> float:
    """Calculate take profit price from a percentage (8.0 means +8%)."""
    return entry_price * (1 + target_pct / 100)
