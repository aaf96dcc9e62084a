"""
Backup archive naming, creation and listing.

Archives are gzip-compressed tarballs named
``docker_backup_<YYYYMMDD>_<HHMMSS>[-<label>].tar.gz`` with a JSON sidecar of
the same base name and a ``.metadata`` extension. ``stack_states.json`` is the
first member; data roots follow, stored under their absolute paths without
the leading slash (``opt/portainer/...``).
"""
import io
import json
import os
import re
import socket
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from backup_manager import __version__
from backup_manager.errors import BackupManagerError, from_os_error
from backup_manager.stacks import STACK_STATES_FILE
from backup_manager import utils
from backup_manager.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

ARCHIVE_PREFIX = 'docker_backup_'
ARCHIVE_SUFFIX = '.tar.gz'
METADATA_SUFFIX = '.metadata'
ARCHIVE_GLOB = f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}"
ARCHIVE_RE = re.compile(r"^docker_backup_(?P<date>\d{8})_(?P<time>\d{6})(?:-(?P<label>[A-Za-z0-9._-]+))?\.tar\.gz$")


def archive_name(timestamp=None, label=None):
    """Return the archive file name for `timestamp` (datetime) and optional label."""
    name = f"{ARCHIVE_PREFIX}{utils.filename_timestamp(timestamp)}"
    safe = utils.sanitize_label(label)
    if safe:
        name = f"{name}-{safe}"
    return f"{name}{ARCHIVE_SUFFIX}"


def parse_archive_name(name):
    """Return (timestamp, label) for a conforming file name, else None."""
    m = ARCHIVE_RE.match(os.path.basename(str(name)))
    if not m:
        return None
    try:
        ts = datetime.strptime(f"{m.group('date')}_{m.group('time')}", '%Y%m%d_%H%M%S')
    except ValueError:
        return None
    return ts, m.group('label')


def metadata_path_for(archive_path):
    """Return the sidecar path for an archive path."""
    p = Path(archive_path)
    return p.with_name(p.name[:-len(ARCHIVE_SUFFIX)] + METADATA_SUFFIX)


def arcname_for(path):
    """Archive member name for an absolute filesystem path."""
    return str(Path(path)).lstrip('/')


@dataclass
class ArchiveInfo:
    path: Path
    timestamp: datetime
    label: Optional[str] = None
    size: int = 0
    metadata: Optional[dict] = None

    @property
    def name(self):
        return self.path.name

    @property
    def metadata_path(self):
        return metadata_path_for(self.path)

    def to_dict(self):
        return {
            'name': self.name,
            'path': str(self.path),
            'timestamp': self.timestamp.strftime('%Y-%m-%d %H:%M:%S'),
            'label': self.label,
            'size': self.size,
            'size_human': utils.format_bytes(self.size),
            'stack_count': (self.metadata or {}).get('stack_count'),
        }


def list_archives(directory, with_metadata=True) -> List[ArchiveInfo]:
    """List conforming archives in `directory`, newest first by embedded timestamp."""
    directory = Path(directory)
    if not directory.is_dir():
        return []

    found = []
    for item in directory.iterdir():
        parsed = parse_archive_name(item.name)
        if not parsed or not item.is_file():
            continue
        ts, label = parsed
        try:
            size = item.stat().st_size
        except OSError:
            size = 0
        metadata = None
        if with_metadata:
            sidecar = metadata_path_for(item)
            if sidecar.is_file():
                try:
                    metadata = json.loads(sidecar.read_text(encoding='utf-8'))
                except (OSError, ValueError) as e:
                    logger.warning("Unreadable metadata sidecar %s: %s", sidecar.name, e)
        found.append(ArchiveInfo(path=item, timestamp=ts, label=label, size=size, metadata=metadata))

    found.sort(key=lambda a: (a.timestamp, a.name), reverse=True)
    return found


def select_archive(directory, selector='latest') -> ArchiveInfo:
    """Pick one archive by 'latest', 1-based index, file name or path."""
    archives = list_archives(directory)
    selector = str(selector or 'latest').strip()

    if selector == 'latest':
        if not archives:
            raise BackupManagerError(f"No backups found in {directory}")
        return archives[0]

    if selector.isdigit():
        idx = int(selector)
        if idx < 1 or idx > len(archives):
            raise BackupManagerError(f"Invalid selection {idx}; {len(archives)} backup(s) available")
        return archives[idx - 1]

    candidate = Path(selector)
    if not candidate.is_absolute():
        candidate = Path(directory) / selector
    parsed = parse_archive_name(candidate.name)
    if not parsed:
        raise BackupManagerError(f"Not a backup archive name: {candidate.name}")
    if not candidate.is_file():
        raise BackupManagerError(f"Backup not found: {candidate}")
    return ArchiveInfo(path=candidate, timestamp=parsed[0], label=parsed[1], size=candidate.stat().st_size)


@dataclass
class BuiltArchive:
    path: Path
    metadata_path: Path
    size: int
    stack_count: int
    data_roots: List[str] = field(default_factory=list)
    skipped_roots: List[str] = field(default_factory=list)


class ArchiveBuilder:
    """Write a record set plus data roots into one archive, all-or-nothing."""

    def __init__(self, config, log_callback=None):
        self.config = config
        self.log_callback = log_callback

    def log(self, level, msg):
        if self.log_callback:
            self.log_callback(level, msg)
        elif level == 'ERROR':
            logger.error("%s", msg)
        elif level == 'WARNING':
            logger.warning("%s", msg)
        else:
            logger.info("%s", msg)

    def _resolve_roots(self, data_roots):
        """Return (included, skipped) absolute roots, dropping nested duplicates."""
        included = []
        skipped = []
        for root in data_roots:
            root = Path(root)
            if not root.is_absolute():
                raise ValueError(f"Data root must be an absolute path: {root}")
            if not root.is_dir():
                self.log('WARNING', f"Data root not found: {root} (will be skipped)")
                skipped.append(str(root))
                continue
            if any(root == p or p in root.parents for p in included):
                continue
            # A later parent replaces earlier children
            included = [p for p in included if root not in p.parents]
            included.append(root)
        return included, skipped

    def build(self, record_set, data_roots, label=None, timestamp=None) -> BuiltArchive:
        backup_dir = Path(self.config.backup_path)
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise from_os_error(e, f"Cannot create backup directory {backup_dir}")

        if timestamp is None:
            timestamp = utils.local_now()
        final_path = backup_dir / archive_name(timestamp, label)
        if final_path.exists():
            raise BackupManagerError(f"Backup already exists: {final_path.name}")
        temp_path = backup_dir / f".{final_path.name}.partial"
        meta_path = metadata_path_for(final_path)

        roots, skipped = self._resolve_roots(data_roots)
        self.log('INFO', f"Creating backup archive at: {final_path}")
        self.log('INFO', f"Including directories: {', '.join(str(r) for r in roots) or '(none)'}")

        states = record_set.to_json().encode('utf-8')
        try:
            with tarfile.open(temp_path, 'w:gz') as tar:
                info = tarfile.TarInfo(STACK_STATES_FILE)
                info.size = len(states)
                info.mtime = int(timestamp.timestamp())
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(states))
                for root in roots:
                    tar.add(str(root), arcname=arcname_for(root), recursive=True)
            with open(temp_path, 'rb') as fh:
                os.fsync(fh.fileno())
            os.replace(temp_path, final_path)
        except (OSError, tarfile.TarError) as e:
            self._discard(temp_path)
            self.log('ERROR', f"Failed to create backup archive: {e}")
            if isinstance(e, OSError):
                raise from_os_error(e, "Archive creation failed")
            raise BackupManagerError(f"Archive creation failed: {e}")
        except BaseException:
            self._discard(temp_path)
            raise

        size = final_path.stat().st_size
        metadata = self._metadata(final_path, record_set, roots, size, timestamp)
        try:
            self._write_json_atomic(meta_path, metadata)
        except OSError as e:
            self._discard(final_path)
            self.log('ERROR', f"Failed to write metadata sidecar: {e}")
            raise from_os_error(e, "Metadata sidecar creation failed")

        utils.chown_paths([final_path, meta_path], self.config.portainer_user)
        self.log('INFO', f"Backup created: {final_path.name} ({utils.format_bytes(size)})")
        return BuiltArchive(
            path=final_path,
            metadata_path=meta_path,
            size=size,
            stack_count=record_set.total_stacks,
            data_roots=[str(r) for r in roots],
            skipped_roots=skipped,
        )

    def _metadata(self, archive_path, record_set, roots, size, timestamp):
        return {
            'timestamp': utils.display_timestamp(timestamp),
            'hostname': socket.gethostname(),
            'archive': archive_path.name,
            'backup_path': str(self.config.backup_path),
            'portainer_path': str(self.config.portainer_path),
            'npm_path': str(self.config.npm_path),
            'tools_path': str(self.config.tools_path),
            'data_roots': [str(r) for r in roots],
            'backup_size': utils.format_bytes(size),
            'backup_size_bytes': size,
            'stack_count': record_set.total_stacks,
            'stacks': record_set.names,
            'capture_version': record_set.capture_version,
            'script_version': __version__,
        }

    @staticmethod
    def _write_json_atomic(path, data):
        tmp = path.with_name(f".{path.name}.partial")
        try:
            with open(tmp, 'w', encoding='utf-8') as fh:
                json.dump(data, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except OSError:
            ArchiveBuilder._discard(tmp)
            raise

    @staticmethod
    def _discard(path):
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove partial file %s: %s", path, e)
