"""
Utility functions shared across the backup manager.
"""
import os
import re
import shutil
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

LOG_FILE_NAME = 'backup-manager.log'
DEFAULT_LOG_DIR = '/var/log/docker-backup-manager'
LOG_FORMAT = '[%(levelname)s] %(asctime)s %(name)s: %(message)s'


# Central logging helpers
def setup_logging():
    """Configure root logger from environment.

    - Uses LOG_LEVEL env var (e.g., DEBUG, INFO); defaults to INFO.
    - If no handlers exist, installs a StreamHandler and a TimedRotatingFileHandler
      writing daily log files into the log directory (LOG_DIR env var).

    If the log directory cannot be created the stream handler keeps working and
    a warning is emitted; file logging is then skipped for this process.
    """
    level_name = os.environ.get('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()

    # Only configure handlers if none are present so tests or other
    # environments can configure logging differently
    if not root.handlers:
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(sh)

        log_dir = get_log_dir()
        try:
            os.makedirs(log_dir, exist_ok=True)
            from logging.handlers import TimedRotatingFileHandler
            fh = TimedRotatingFileHandler(
                filename=os.path.join(log_dir, LOG_FILE_NAME),
                when='midnight',
                backupCount=14,
                encoding='utf-8'
            )
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(fh)
        except OSError as e:
            root.warning("Failed to configure file logging (LOG_DIR=%s): %s", log_dir, e)

    root.setLevel(level)


def get_logger(name=None):
    """Return a logger for the given name (or the module logger if none)."""
    return logging.getLogger(name if name else __name__)


def get_log_dir():
    """Return the log directory (LOG_DIR env var or the packaged default)."""
    return os.environ.get('LOG_DIR') or DEFAULT_LOG_DIR


def local_now():
    """Get current datetime in the configured display timezone (for filenames, logs)."""
    tz = get_display_timezone()
    from datetime import timezone
    return datetime.now(timezone.utc).astimezone(tz)


def get_display_timezone():
    """Get the configured display timezone."""
    tz_name = os.environ.get('TZ', 'UTC')
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo('UTC')


def format_bytes(bytes_val):
    """Format bytes to human readable string."""
    if bytes_val is None:
        return 'N/A'

    bytes_val = float(bytes_val)

    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}PB"


def format_duration(seconds):
    """Format duration in seconds to human readable string."""
    if seconds is None:
        return 'N/A'

    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    minutes = seconds // 60
    secs = seconds % 60

    if minutes < 60:
        return f"{minutes}m {secs}s"

    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def filename_timestamp(dt=None):
    """Return a timestamp string suitable for filenames.

    Format: YYYYMMDD_HHMMSS (e.g. 20251225_182530) using `local_now()` so the
    timestamp reflects the configured display timezone (TZ).
    """
    if dt is None:
        dt = local_now()
    return dt.strftime('%Y%m%d_%H%M%S')


def display_timestamp(dt=None):
    """Return 'YYYY-MM-DD HH:MM:SS' in the display timezone."""
    if dt is None:
        dt = local_now()
    return dt.strftime('%Y-%m-%d %H:%M:%S')


def sanitize_label(label):
    """Return a filename-safe archive label, or None if nothing usable remains.

    Characters outside [A-Za-z0-9._-] become '-', runs of '-' collapse and
    leading/trailing '-' are stripped.
    """
    if label is None:
        return None
    safe = re.sub(r'[^A-Za-z0-9._-]', '-', str(label))
    safe = re.sub(r'-+', '-', safe).strip('-')
    return safe or None


def get_disk_usage(path):
    """
    Get disk usage for the filesystem holding `path`.

    Returns dict with total, used, free (bytes) and percent.
    """
    try:
        usage = shutil.disk_usage(path)
        return {
            'total': usage.total,
            'used': usage.used,
            'free': usage.free,
            'percent': (usage.used / usage.total) * 100 if usage.total else 0
        }
    except OSError:
        return {'total': 0, 'used': 0, 'free': 0, 'percent': 0}


def resolve_owner(user):
    """Return (uid, gid) for a user name, or None if it cannot be resolved."""
    if not user:
        return None
    try:
        import pwd
        entry = pwd.getpwnam(user)
        return entry.pw_uid, entry.pw_gid
    except (ImportError, KeyError):
        return None


def chown_paths(paths, user, recursive=False):
    """Hand ownership of `paths` to `user`.

    Only attempted when running as root; otherwise (or when the user does not
    exist) nothing is changed. Returns a dict with counts
    {'changed': int, 'errors': int, 'skipped': bool}.
    """
    logger = get_logger(__name__)
    owner = resolve_owner(user)
    if owner is None or not hasattr(os, 'geteuid') or os.geteuid() != 0:
        logger.debug("Skipping ownership change to %s (not root or unknown user)", user)
        return {'changed': 0, 'errors': 0, 'skipped': True}

    uid, gid = owner
    changed = 0
    errors = 0

    def _chown(p):
        nonlocal changed, errors
        try:
            os.lchown(p, uid, gid)
            changed += 1
        except OSError:
            errors += 1

    for base in paths:
        base = str(base)
        if not os.path.lexists(base):
            continue
        _chown(base)
        if recursive and os.path.isdir(base) and not os.path.islink(base):
            for root, dirs, files in os.walk(base):
                for name in dirs + files:
                    _chown(os.path.join(root, name))

    if errors:
        logger.warning("Ownership change to %s failed for %d path(s)", user, errors)
    return {'changed': changed, 'errors': errors, 'skipped': False}
