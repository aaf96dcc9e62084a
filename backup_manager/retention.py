"""
Keep-most-recent-N retention for the local archive directory.
"""
from pathlib import Path

from backup_manager import utils
from backup_manager.archive import list_archives
from backup_manager.utils import setup_logging, get_logger

# Configure logging using centralized setup so LOG_LEVEL is respected
setup_logging()
logger = get_logger(__name__)


def select_for_removal(archives, keep_count):
    """Return the archives beyond the newest `keep_count` (input is newest first)."""
    if keep_count < 1:
        raise ValueError("keep_count must be at least 1")
    return list(archives[keep_count:])


def enforce(archive_directory, keep_count, log_callback=None):
    """
    Delete archives beyond the newest `keep_count`.

    Ordering uses the timestamp embedded in the file name, never mtime. Each
    archive is removed together with its ``.metadata`` sidecar.

    Args:
        archive_directory: Directory holding docker_backup_*.tar.gz files
        keep_count: Number of most recent archives to keep
        log_callback: Function to call for logging

    Returns:
        List of removed paths (archives and sidecars)
    """
    def log(level, msg):
        if log_callback:
            log_callback(level, msg)
        else:
            if level == 'ERROR':
                logger.error("%s", msg)
            elif level == 'WARNING':
                logger.warning("%s", msg)
            else:
                logger.info("%s", msg)

    archive_directory = Path(archive_directory)
    archives = list_archives(archive_directory, with_metadata=False)
    log('INFO', f"Applying retention policy: keep {keep_count} most recent backup(s); found {len(archives)}")

    to_delete = select_for_removal(archives, keep_count)
    if not to_delete:
        log('INFO', "Retention cleanup finished. No archives needed deletion.")
        return []

    removed = []
    reclaimed = 0
    for archive in to_delete:
        sidecar = archive.metadata_path
        log('INFO', f"Deleting archive: {archive.name} ({utils.format_bytes(archive.size)})")
        # Sidecar first: an interrupted run leaves an archive without metadata, never the reverse
        try:
            if sidecar.exists():
                sidecar.unlink()
                removed.append(sidecar)
            archive.path.unlink()
            removed.append(archive.path)
            reclaimed += archive.size
        except FileNotFoundError:
            continue
        except OSError as e:
            log('ERROR', f"Failed to delete {archive.name}: {e}")

    # Sidecars whose archive is gone are removed as well
    for orphan in archive_directory.glob('docker_backup_*.metadata'):
        tarball = orphan.with_name(orphan.name[:-len('.metadata')] + '.tar.gz')
        if not tarball.exists():
            try:
                orphan.unlink()
                removed.append(orphan)
                log('INFO', f"Removed orphaned metadata file: {orphan.name}")
            except OSError as e:
                log('WARNING', f"Could not remove orphaned metadata {orphan.name}: {e}")

    deleted = sum(1 for p in removed if p.name.endswith('.tar.gz'))
    log('INFO', f"Retention cleanup finished. Deleted {deleted} archive(s), freeing {utils.format_bytes(reclaimed)}.")
    return removed
