"""
Advisory operation lock shared by backup and restore runs.
"""
import errno
import fcntl
import os
from contextlib import contextmanager
from pathlib import Path

from backup_manager.errors import LockError, from_os_error
from backup_manager.utils import get_logger

logger = get_logger(__name__)

# Backup and restore share the same archive directory, so they share one lock
OPERATION_LOCK = 'operation'


def lock_path(name, lock_dir):
    return Path(lock_dir) / f"backup_manager_{name}.lock"


def _read_holder(path):
    """Return (pid, operation) recorded in a lock file, or (None, None)."""
    try:
        text = Path(path).read_text(encoding='utf-8').split()
    except OSError:
        return None, None
    if not text or not text[0].isdigit():
        return None, None
    return int(text[0]), (text[1] if len(text) > 1 else None)


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@contextmanager
def operation_lock(name=OPERATION_LOCK, lock_dir='/tmp', operation=None):
    """Hold ``<lock_dir>/backup_manager_<name>.lock`` for the duration of the block.

    The lock is an ``fcntl.flock`` on the file, which the kernel drops when
    the holder exits; a file left behind by a dead process is simply taken
    over. A second concurrent holder gets LockError.
    """
    path = lock_path(name, lock_dir)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(path, 'a+', encoding='utf-8')
    except OSError as e:
        raise from_os_error(e, f"Cannot open lock file {path}")

    try:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        fh.close()
        if e.errno not in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
            raise from_os_error(e, f"Cannot lock {path}")
        pid, held_by = _read_holder(path)
        raise LockError(f"Another {held_by or 'backup/restore'} operation is running (PID: {pid or 'unknown'})",
                        details={'lock_file': str(path), 'pid': pid})

    pid, held_by = _read_holder(path)
    if pid and pid != os.getpid() and not _pid_alive(pid):
        logger.warning("Removing stale lock left by PID %s (%s)", pid, held_by or 'unknown')

    try:
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()} {operation or name}\n")
        fh.flush()
        logger.debug("Acquired operation lock %s", path)
        yield path
    finally:
        try:
            fh.seek(0)
            fh.truncate()
        except OSError as e:
            logger.warning("Could not clear lock file %s: %s", path, e)
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        fh.close()
        logger.debug("Released operation lock %s", path)
