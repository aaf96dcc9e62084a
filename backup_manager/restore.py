"""
Restore orchestration.

A restore walks one archive through a fixed sequence of states::

    Selected -> Validated -> Extracted -> DataPlaced -> StacksReconciled -> Complete

with ``Failed`` reachable from every step. Nothing on disk or in Portainer
is touched before DataPlaced, so a failure up to and including Extracted
leaves the host unchanged (``changed`` stays False on the report).
"""
import json
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from backup_manager import utils
from backup_manager.archive import arcname_for, metadata_path_for
from backup_manager.errors import (
    ApiResponseError,
    ApiUnavailable,
    BackupManagerError,
    NotFoundError,
    StackConflict,
    StackCreateFailed,
    from_os_error,
)
from backup_manager.lock import OPERATION_LOCK, operation_lock
from backup_manager.stacks import STATUS_INACTIVE, unwrap_manifest
from backup_manager.utils import setup_logging, get_logger
from backup_manager.validator import validate

setup_logging()
logger = get_logger(__name__)


def keep_mode_filter(member, dest_path):
    """Extraction filter with the `tar` filter's path and link checks.

    The stock `tar` filter also clears group/other write bits, which would
    turn a 0o664 sqlite file into 0o644 on restore. Data roots must come back
    with the modes they were archived with, so the checked member gets its
    original mode back.
    """
    checked = tarfile.tar_filter(member, dest_path)
    return checked.replace(mode=member.mode, deep=False)


class RestoreState(Enum):
    SELECTED = 'Selected'
    VALIDATED = 'Validated'
    EXTRACTED = 'Extracted'
    DATA_PLACED = 'DataPlaced'
    STACKS_RECONCILED = 'StacksReconciled'
    COMPLETE = 'Complete'
    FAILED = 'Failed'


ALLOWED_TRANSITIONS = {
    RestoreState.SELECTED: {RestoreState.VALIDATED, RestoreState.FAILED},
    RestoreState.VALIDATED: {RestoreState.EXTRACTED, RestoreState.FAILED},
    RestoreState.EXTRACTED: {RestoreState.DATA_PLACED, RestoreState.FAILED},
    RestoreState.DATA_PLACED: {RestoreState.STACKS_RECONCILED, RestoreState.FAILED},
    RestoreState.STACKS_RECONCILED: {RestoreState.COMPLETE, RestoreState.FAILED},
    RestoreState.COMPLETE: set(),
    RestoreState.FAILED: set(),
}

CREATED = 'created'
SKIPPED = 'skipped'
FAILED = 'failed'


@dataclass
class StackOutcome:
    name: str
    result: str
    stack_id: object = None
    error: Optional[str] = None


@dataclass
class RestoreReport:
    archive_path: Path
    state: RestoreState = RestoreState.SELECTED
    changed: bool = False
    failed_at: Optional[RestoreState] = None
    error: Optional[str] = None
    outcomes: List[StackOutcome] = field(default_factory=list)
    placed_roots: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    log_lines: List[str] = field(default_factory=list)

    @property
    def archive_name(self):
        return Path(self.archive_path).name

    @property
    def success(self):
        return self.state is RestoreState.COMPLETE

    def _names(self, result):
        return [o.name for o in self.outcomes if o.result == result]

    @property
    def created(self):
        return self._names(CREATED)

    @property
    def skipped(self):
        return self._names(SKIPPED)

    @property
    def failed(self):
        return self._names(FAILED)

    def to_dict(self):
        return {
            'archive': str(self.archive_path),
            'state': self.state.value,
            'success': self.success,
            'changed': self.changed,
            'failed_at': self.failed_at.value if self.failed_at else None,
            'error': self.error,
            'created': self.created,
            'skipped': self.skipped,
            'failed': self.failed,
            'stacks': [o.__dict__ for o in self.outcomes],
            'placed_roots': list(self.placed_roots),
            'warnings': list(self.warnings),
        }


class RestoreOrchestrator:
    """Drive one archive back onto the host and the Portainer endpoint.

    `client` must already be authenticated unless `credentials` are given, in
    which case authentication happens right before stack reconciliation (the
    Portainer data directory has been replaced by then).
    """

    def __init__(self, config, client, credentials=None, place_data=True, use_lock=True, log_callback=None):
        self.config = config
        self.client = client
        self.credentials = credentials
        self.place_data = place_data
        self.use_lock = use_lock
        self.log_callback = log_callback
        self.report = None
        self.record_set = None
        self.scratch_dir = None
        self.log_buffer = []

    def log(self, level, message):
        timestamp = utils.local_now().strftime('%Y-%m-%d %H:%M:%S')
        log_line = f"[{timestamp}] [{level}] {message}"
        self.log_buffer.append(log_line)
        if self.log_callback:
            self.log_callback(level, message)
        if level == 'ERROR':
            logger.error("%s", message)
        elif level == 'WARNING':
            logger.warning("%s", message)
        else:
            logger.info("%s", message)

    def _transition(self, new_state):
        current = self.report.state
        if new_state not in ALLOWED_TRANSITIONS[current]:
            raise BackupManagerError(f"Illegal restore transition {current.value} -> {new_state.value}")
        self.report.state = new_state
        self.log('INFO', f"Restore state: {new_state.value}")

    def _fail(self, error):
        if self.report.state in (RestoreState.COMPLETE, RestoreState.FAILED):
            return
        self.report.failed_at = self.report.state
        self.report.error = str(error)
        self._transition(RestoreState.FAILED)
        if self.report.changed:
            self.log('ERROR', f"Restore failed at {self.report.failed_at.value} after changes were made: {error}")
        else:
            self.log('ERROR', f"Restore failed at {self.report.failed_at.value}; nothing was changed: {error}")

    def restore(self, archive_path) -> RestoreReport:
        """Run every step for `archive_path` and return the final report.

        Errors from the taxonomy end in the Failed state on the report rather
        than being raised; per-stack problems are aggregated.
        """
        self.report = RestoreReport(archive_path=Path(archive_path))
        self.log_buffer = self.report.log_lines
        self.log('INFO', f"Restoring from backup: {self.report.archive_name}")

        try:
            if self.use_lock:
                with operation_lock(OPERATION_LOCK, self.config.lock_dir, operation='restore'):
                    self._run_steps()
            else:
                self._run_steps()
        except BackupManagerError as e:
            self._fail(e)
        finally:
            self._cleanup_scratch()

        if self.report.success:
            self.log('INFO', f"Restore completed: {len(self.report.created)} created, "
                             f"{len(self.report.skipped)} skipped")
        return self.report

    def _run_steps(self):
        try:
            self.step_validate()
            self.step_extract()
            self.step_place_data()
            self.step_reconcile()
            self.step_finish()
        except OSError as e:
            raise from_os_error(e, "Restore I/O failure")

    def step_validate(self):
        """Selected -> Validated. A corrupt archive stops here."""
        report = validate(self.report.archive_path)
        self.report.warnings.extend(report.warnings)
        report.raise_for_invalid()
        self.record_set = report.record_set
        self.log('INFO', f"Archive validated: {self.record_set.total_stacks} stack(s) recorded")
        self._transition(RestoreState.VALIDATED)

    def step_extract(self):
        """Validated -> Extracted. Contents go to a scratch directory only."""
        scratch_parent = Path(self.config.backup_path)
        scratch_parent.mkdir(parents=True, exist_ok=True)
        self.scratch_dir = Path(tempfile.mkdtemp(prefix='.restore_', dir=str(scratch_parent)))
        self.log('INFO', f"Extracting archive to scratch directory: {self.scratch_dir}")
        try:
            with tarfile.open(self.report.archive_path, 'r:gz') as tar:
                tar.extractall(str(self.scratch_dir), filter=keep_mode_filter)
        except (tarfile.TarError, EOFError) as e:
            raise BackupManagerError(f"Extraction failed: {e}")
        self._transition(RestoreState.EXTRACTED)

    def _declared_roots(self):
        sidecar = metadata_path_for(self.report.archive_path)
        if sidecar.is_file():
            try:
                roots = json.loads(sidecar.read_text(encoding='utf-8')).get('data_roots')
                if isinstance(roots, list) and roots:
                    return [Path(r) for r in roots]
            except (OSError, ValueError) as e:
                self.log('WARNING', f"Ignoring unreadable metadata sidecar: {e}")

        roots = [Path(self.config.portainer_path), Path(self.config.npm_path)]
        tools_extracted = self.scratch_dir / arcname_for(self.config.tools_path)
        if tools_extracted.is_dir():
            for child in sorted(tools_extracted.iterdir()):
                if child.is_dir():
                    roots.append(Path(self.config.tools_path) / child.name)
        return roots

    def step_place_data(self):
        """Extracted -> DataPlaced. Live data roots are swapped for the archived ones."""
        if not self.place_data:
            self.log('INFO', "Data placement disabled; leaving data directories untouched")
            self._transition(RestoreState.DATA_PLACED)
            return

        for root in self._declared_roots():
            source = self.scratch_dir / arcname_for(root)
            if not source.exists():
                msg = f"Archive holds no data for {root}; live directory left as is"
                self.report.warnings.append(msg)
                self.log('WARNING', msg)
                continue
            self._replace_root(source, root)
            self.report.placed_roots.append(str(root))

        self._transition(RestoreState.DATA_PLACED)

    def _replace_root(self, source, live):
        live = Path(live)
        live.parent.mkdir(parents=True, exist_ok=True)
        aside = None
        if live.exists() or live.is_symlink():
            aside = live.with_name(f".{live.name}.pre-restore-{utils.filename_timestamp()}")
            os.rename(str(live), str(aside))
        try:
            self.report.changed = True
            shutil.move(str(source), str(live))
        except OSError:
            if aside is not None and not live.exists():
                os.rename(str(aside), str(live))
            raise
        if aside is not None:
            shutil.rmtree(str(aside))
        utils.chown_paths([live], self.config.portainer_user, recursive=True)
        self.log('INFO', f"Restored data directory: {live}")

    def step_reconcile(self):
        """DataPlaced -> StacksReconciled. Best-effort across stacks."""
        if self.credentials is not None:
            self.client.authenticate(self.credentials.username, self.credentials.password)

        endpoint_id = self.config.endpoint_id
        for record in self.record_set.stacks:
            outcome = self._reconcile_stack(record, endpoint_id)
            self.report.outcomes.append(outcome)
            if outcome.result == FAILED:
                self.log('ERROR', f"Stack '{record.name}' failed: {outcome.error}")
            elif outcome.result == SKIPPED:
                self.log('INFO', f"Stack '{record.name}' already present; skipped")
            else:
                self.log('INFO', f"Stack '{record.name}' created (ID: {outcome.stack_id})")

        self._transition(RestoreState.STACKS_RECONCILED)

    def _reconcile_stack(self, record, endpoint_id):
        """Create one stack unless a stack of that name exists.

        A stack captured as Inactive is stopped again right after creation;
        if that stop fails the stack still counts as created and a warning is
        recorded. AuthenticationError propagates and fails the whole restore.
        """
        try:
            existing = self.client.find_stack(record.name, endpoint_id=endpoint_id)
            if existing is not None:
                return StackOutcome(record.name, SKIPPED, stack_id=existing.id)

            manifest = unwrap_manifest(record.manifest_content)
            if manifest is None:
                return StackOutcome(record.name, FAILED,
                                    error=f"no compose content captured ({record.capture_warning or 'unknown reason'})")

            created = self.client.create_stack(record.name, manifest, endpoint_id=endpoint_id, env=record.env)
            self.report.changed = True
        except StackConflict:
            return StackOutcome(record.name, SKIPPED)
        except (ApiUnavailable, ApiResponseError, StackCreateFailed, NotFoundError) as e:
            return StackOutcome(record.name, FAILED, error=str(e))

        if record.status == STATUS_INACTIVE:
            try:
                self.client.stop_stack(created.id, endpoint_id=endpoint_id)
                self.log('INFO', f"Stack '{record.name}' was inactive at backup time; stopped it again")
            except (ApiUnavailable, ApiResponseError, NotFoundError) as e:
                msg = f"Stack '{record.name}' was inactive at backup time but could not be stopped: {e}"
                self.report.warnings.append(msg)
                self.log('WARNING', msg)
        return StackOutcome(record.name, CREATED, stack_id=created.id)

    def step_finish(self):
        """StacksReconciled -> Complete, or Failed when any stack failed."""
        failed = self.report.failed
        if failed:
            self._fail(BackupManagerError(f"{len(failed)} stack(s) could not be restored: {', '.join(failed)}"))
            return
        self._transition(RestoreState.COMPLETE)

    def _cleanup_scratch(self):
        if self.scratch_dir is None:
            return
        try:
            shutil.rmtree(str(self.scratch_dir))
        except FileNotFoundError:
            pass
        except OSError as e:
            self.log('WARNING', f"Could not remove scratch directory {self.scratch_dir}: {e}")
        self.scratch_dir = None
