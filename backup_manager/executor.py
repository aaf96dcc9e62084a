"""
Backup execution engine with phased processing.
"""
import time

from backup_manager import utils
from backup_manager.archive import ArchiveBuilder
from backup_manager.config import load_credentials
from backup_manager.errors import (
    ApiResponseError,
    ApiUnavailable,
    BackupManagerError,
    NotFoundError,
    from_os_error,
)
from backup_manager.lock import OPERATION_LOCK, operation_lock
from backup_manager.notifications import notify_backup
from backup_manager.portainer import PortainerClient
from backup_manager.retention import enforce
from backup_manager.stacks import STATUS_ACTIVE, StackCapturer
from backup_manager.utils import setup_logging, get_logger

# Configure logging using centralized setup so LOG_LEVEL is respected
setup_logging()
logger = get_logger(__name__)


class BackupExecutor:
    """Runs one backup: capture, build, retention, notify."""

    def __init__(self, config, client=None, credentials=None, label=None, run_retention=True, notify=True):
        """
        Initialize executor.

        Args:
            config: BackupConfig
            client: PortainerClient (authenticated lazily if `credentials` given
                or loaded from the credentials file)
            credentials: Credentials; loaded from the config when omitted
            label: Optional archive name label
            run_retention: Whether Phase 3 prunes old archives
            notify: Whether Phase 4 sends Apprise notifications
        """
        self.config = config
        self.client = client
        self.credentials = credentials
        self.label = label
        self.run_retention = run_retention
        self.notify = notify
        self.log_buffer = []
        self.warnings = []
        self.record_set = None
        self.built = None
        self.removed = []

    def log(self, level, message):
        """Add a timestamped line to the job log and forward it to the logger."""
        timestamp = utils.local_now().strftime('%Y-%m-%d %H:%M:%S')
        log_line = f"[{timestamp}] [{level}] {message}"
        self.log_buffer.append(log_line)
        if level == 'ERROR':
            logger.error("%s", message)
        elif level == 'WARNING':
            logger.warning("%s", message)
        else:
            logger.info("%s", message)

    def run(self):
        """Execute the backup with all phases and return a result dict.

        Errors abort the remaining phases, are logged, reported via
        notification and re-raised.
        """
        start = time.monotonic()
        self.log('INFO', "Starting backup")
        try:
            with operation_lock(OPERATION_LOCK, self.config.lock_dir, operation='backup'):
                self._phase_0_init()
                self._phase_1_capture()
                self._phase_2_build()
                if self.run_retention:
                    self._phase_3_retention()
            result = self._result('success', start)
            self._phase_4_finalize(result)
            return result
        except BackupManagerError as e:
            self.log('ERROR', f"Backup failed: {e}")
            result = self._result('failed', start, error=str(e))
            self._send_notification(result)
            raise

    def _result(self, status, start, error=None):
        return {
            'status': status,
            'error': error,
            'archive_path': str(self.built.path) if self.built else None,
            'archive_name': self.built.path.name if self.built else None,
            'metadata_path': str(self.built.metadata_path) if self.built else None,
            'size': self.built.size if self.built else 0,
            'stack_count': self.record_set.total_stacks if self.record_set else 0,
            'stacks': self.record_set.names if self.record_set else [],
            'data_roots': self.built.data_roots if self.built else [],
            'warnings': list(self.warnings),
            'removed': [str(p) for p in self.removed],
            'duration': int(time.monotonic() - start),
            'log': list(self.log_buffer),
        }

    def _phase_0_init(self):
        """Phase 0: Ensure the archive directory exists and report free space."""
        self.log('INFO', '### Phase 0: Initializing backup directory ###')
        backup_dir = self.config.backup_path
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise from_os_error(e, f"Cannot create backup directory {backup_dir}")
        self.log('INFO', f"Ensured backup directory exists: {backup_dir}")
        usage = utils.get_disk_usage(backup_dir)
        if usage['total']:
            self.log('INFO', f"Disk usage: {utils.format_bytes(usage['total'])} total, "
                             f"{utils.format_bytes(usage['free'])} available ({usage['percent']:.0f}% used)")

    def _get_client(self):
        if self.client is None:
            if self.credentials is None:
                self.credentials = load_credentials(self.config)
            self.client = PortainerClient.from_config(self.config, self.credentials)
        if getattr(self.client, 'token', None) is None:
            if self.credentials is None:
                self.credentials = load_credentials(self.config)
            self.client.authenticate(self.credentials.username, self.credentials.password)
            self.log('INFO', "Authenticated with Portainer API")
        return self.client

    def _phase_1_capture(self):
        """Phase 1: Capture stack states from Portainer."""
        self.log('INFO', '### Phase 1: Capturing stack states ###')
        capturer = StackCapturer(self._get_client(), endpoint_id=self.config.endpoint_id, log_callback=self.log)
        self.record_set = capturer.capture()
        self.warnings.extend(str(w) for w in capturer.warnings)

    def _phase_2_build(self):
        """Phase 2: Stop running stacks, build the archive and sidecar, start them again.

        Stacks are restarted even when the build fails. A stack that cannot
        be restarted fails the backup although the archive was written.
        """
        self.log('INFO', '### Phase 2: Creating backup archive ###')
        roots = self.config.data_roots(self.record_set.names)
        stopped = []
        if not self.config.stop_stacks:
            self.log('WARNING', "Creating archive without stopping stacks - may result in inconsistent backup")
        try:
            if self.config.stop_stacks:
                self._stop_stacks(stopped)
            builder = ArchiveBuilder(self.config, log_callback=self.log)
            self.built = builder.build(self.record_set, roots, label=self.label)
        finally:
            not_restarted = self._start_stacks(stopped)
        for root in self.built.skipped_roots:
            self.warnings.append(f"Data root not found: {root}")
        if not_restarted:
            raise BackupManagerError(f"Failed to restart stack(s) after backup: {', '.join(not_restarted)}",
                                     details={'archive': str(self.built.path)})

    def _stop_stacks(self, stopped):
        """Stop every Active stack, appending each stopped record to `stopped`."""
        for record in self.record_set.stacks:
            if record.status != STATUS_ACTIVE or record.id is None:
                self.log('INFO', f"Stack {record.name} is not running, skipping stop step")
                continue
            try:
                self.client.stop_stack(record.id, endpoint_id=self.config.endpoint_id)
            except (ApiUnavailable, ApiResponseError, NotFoundError) as e:
                raise BackupManagerError(f"Failed to stop stack: {record.name}", details={'error': str(e)})
            stopped.append(record)
            self.log('INFO', f"Stopped stack {record.name}")

    def _start_stacks(self, stopped):
        """Start the stacks stopped for the build; return the names that failed."""
        failed = []
        for record in stopped:
            try:
                self.client.start_stack(record.id, endpoint_id=self.config.endpoint_id)
                self.log('INFO', f"Started stack {record.name}")
            except (ApiUnavailable, ApiResponseError, NotFoundError) as e:
                self.log('ERROR', f"Failed to restart stack {record.name}: {e}")
                self.warnings.append(f"Stack '{record.name}' was not restarted: {e}")
                failed.append(record.name)
        return failed

    def _phase_3_retention(self):
        """Phase 3: Run local retention cleanup. Failures here do not fail the backup."""
        self.log('INFO', '### Phase 3: Running local retention cleanup ###')
        try:
            self.removed = enforce(self.config.backup_path, self.config.backup_retention, log_callback=self.log)
        except (OSError, ValueError) as e:
            self.log('ERROR', f"Retention failed: {e}")
            self.warnings.append(f"Retention failed: {e}")

    def _phase_4_finalize(self, result):
        """Phase 4: Finalize report and send notification."""
        self.log('INFO', '### Phase 4: Finalizing report and sending notification ###')
        self.log('INFO', f"Backup completed successfully in {utils.format_duration(result['duration'])}: "
                         f"{result['archive_name']} ({utils.format_bytes(result['size'])})")
        self._send_notification(result)
        result['log'] = list(self.log_buffer)

    def _send_notification(self, result):
        if not self.notify:
            return
        try:
            notify_backup(self.config, result)
        except Exception as e:
            self.log('WARNING', f"Failed to send notification: {e}")
