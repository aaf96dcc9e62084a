"""
Archive integrity and structure checks.
"""
import gzip
import json
import tarfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from backup_manager.archive import arcname_for, metadata_path_for, parse_archive_name
from backup_manager.errors import ArchiveCorrupt
from backup_manager.stacks import STACK_STATES_FILE, ArchiveRecordSet
from backup_manager.utils import get_logger

logger = get_logger(__name__)

_READ_CHUNK = 1024 * 1024


@dataclass
class ValidationReport:
    path: Path
    valid: bool = False
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    record_set: Optional[ArchiveRecordSet] = None
    member_count: int = 0
    roots_present: List[str] = field(default_factory=list)

    def raise_for_invalid(self):
        if not self.valid:
            raise ArchiveCorrupt(f"Archive {self.path.name} is invalid: {self.reason}",
                                 details={'path': str(self.path)})
        return self

    def to_dict(self):
        return {
            'path': str(self.path),
            'valid': self.valid,
            'reason': self.reason,
            'warnings': list(self.warnings),
            'total_stacks': self.record_set.total_stacks if self.record_set else None,
            'member_count': self.member_count,
            'roots_present': list(self.roots_present),
        }


def _normalize_member_name(name):
    while name.startswith('./'):
        name = name[2:]
    return name.rstrip('/')


def _is_unsafe(name):
    return name.startswith('/') or '..' in Path(name).parts


def _declared_roots(path, expected_roots):
    if expected_roots:
        return [str(r) for r in expected_roots]
    sidecar = metadata_path_for(path)
    if sidecar.is_file():
        try:
            meta = json.loads(sidecar.read_text(encoding='utf-8'))
            roots = meta.get('data_roots')
            if isinstance(roots, list):
                return [str(r) for r in roots]
            return [str(meta[k]) for k in ('portainer_path', 'npm_path') if meta.get(k)]
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable metadata sidecar %s: %s", sidecar.name, e)
    return []


def validate(archive_path, expected_roots=None) -> ValidationReport:
    """Check an archive end to end.

    The whole gzip/tar stream is decompressed, ``stack_states.json`` must
    appear exactly once at the archive root and parse into a record set whose
    ``total_stacks`` matches its stack list with unique names. Declared data
    roots that have no members only produce warnings.
    """
    path = Path(archive_path)
    report = ValidationReport(path=path)

    if not path.is_file():
        report.reason = 'archive file does not exist'
        return report
    if not parse_archive_name(path.name):
        report.warnings.append(f"file name does not follow the backup naming convention: {path.name}")

    states_raw = []
    names = []
    try:
        with gzip.open(path, 'rb') as gz:
            with tarfile.open(fileobj=gz, mode='r|') as tar:
                for member in tar:
                    name = _normalize_member_name(member.name)
                    if _is_unsafe(member.name):
                        report.reason = f"unsafe member path: {member.name}"
                        return report
                    names.append(name)
                    if not member.isfile():
                        continue
                    fh = tar.extractfile(member)
                    if fh is None:
                        continue
                    if name == STACK_STATES_FILE:
                        states_raw.append(fh.read())
                    else:
                        while fh.read(_READ_CHUNK):
                            pass
            # Drain to the gzip trailer so truncation and CRC errors surface
            while gz.read(_READ_CHUNK):
                pass
    except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
        report.reason = f"unreadable gzip/tar stream: {e}"
        return report

    report.member_count = len(names)
    if len(states_raw) == 0:
        report.reason = f"{STACK_STATES_FILE} missing from archive root"
        return report
    if len(states_raw) > 1:
        report.reason = f"{STACK_STATES_FILE} appears {len(states_raw)} times"
        return report

    try:
        record_set = ArchiveRecordSet.from_json(states_raw[0].decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        report.reason = f"{STACK_STATES_FILE} does not match the stack states schema: {e}"
        return report
    report.record_set = record_set

    if record_set.total_stacks != len(record_set.stacks):
        report.reason = (f"total_stacks is {record_set.total_stacks} but "
                         f"{len(record_set.stacks)} stack(s) are recorded")
        return report
    seen = set()
    for name in record_set.names:
        if name in seen:
            report.reason = f"stack name '{name}' recorded more than once"
            return report
        seen.add(name)

    for record in record_set.incomplete:
        report.warnings.append(f"stack '{record.name}' has no compose content"
                               f"{': ' + record.capture_warning if record.capture_warning else ''}")

    for root in _declared_roots(path, expected_roots):
        prefix = arcname_for(root)
        if any(n == prefix or n.startswith(prefix + '/') for n in names):
            report.roots_present.append(root)
        else:
            report.warnings.append(f"data root {root} has no entries in the archive")

    report.valid = True
    for w in report.warnings:
        logger.warning("Validation warning for %s: %s", path.name, w)
    logger.info("Archive %s is valid (%d stacks, %d members)", path.name, record_set.total_stacks, report.member_count)
    return report
