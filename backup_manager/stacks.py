"""
Stack records, the archived stack-state document and stack state capture.

Portainer returns a stack's compose file wrapped in a JSON object
(``{"StackFileContent": "..."}``) and that wrapped text is what gets archived.
Capture keeps it exactly as received; `unwrap_manifest` strips the wrapper
at restore time and also accepts plain compose text from older archives.
"""
import json
from dataclasses import dataclass, field
from typing import List, Optional

from backup_manager import __version__
from backup_manager.errors import PartialCaptureWarning
from backup_manager.utils import setup_logging, get_logger, display_timestamp

setup_logging()
logger = get_logger(__name__)

STACK_STATES_FILE = 'stack_states.json'
CAPTURE_VERSION = f"backup-manager-{__version__}"
ENVELOPE_KEY = 'StackFileContent'

STATUS_ACTIVE = 'Active'
STATUS_INACTIVE = 'Inactive'
# Portainer reports stack status as 1 (active) / 2 (inactive)
_STATUS_CODES = {1: STATUS_ACTIVE, 2: STATUS_INACTIVE}


def normalize_status(value):
    """Map a Portainer status code or name to Active/Inactive."""
    if isinstance(value, str):
        if value.isdigit():
            value = int(value)
        elif value.lower() == 'active':
            return STATUS_ACTIVE
        elif value.lower() == 'inactive':
            return STATUS_INACTIVE
    if isinstance(value, int) and not isinstance(value, bool):
        return _STATUS_CODES.get(value, STATUS_INACTIVE)
    return STATUS_INACTIVE


def unwrap_manifest(content: Optional[str]) -> Optional[str]:
    """Return the compose text held in `content`.

    If `content` parses as a JSON object with a string ``StackFileContent``
    field, the inner string is returned. Anything else is treated as plain
    compose text and returned unchanged. ``None`` (capture failed) stays None.
    """
    if content is None:
        return None
    try:
        decoded = json.loads(content)
    except (TypeError, ValueError):
        return content
    if isinstance(decoded, dict) and isinstance(decoded.get(ENVELOPE_KEY), str):
        return decoded[ENVELOPE_KEY]
    return content


@dataclass(frozen=True)
class StackRecord:
    """One orchestrated stack as captured.

    `manifest_content` is None when the compose file could not be captured;
    `capture_warning` then explains why. An empty string is a real (empty)
    manifest. `env` is the stack's Portainer environment, a list of
    ``{"name": ..., "value": ...}`` entries.
    """
    id: object
    name: str
    status: str = STATUS_ACTIVE
    manifest_content: Optional[str] = None
    capture_warning: Optional[str] = None
    env: list = field(default_factory=list)

    @property
    def has_manifest(self):
        return self.manifest_content is not None

    def to_dict(self):
        data = {
            'id': self.id,
            'name': self.name,
            'status': self.status,
            'compose_file_content': self.manifest_content if self.manifest_content is not None else '',
            'env_variables': list(self.env),
        }
        if self.capture_warning:
            data['capture_warning'] = self.capture_warning
        return data

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ValueError(f"stack entry must be an object, got {type(data).__name__}")
        name = data.get('name')
        if not isinstance(name, str) or not name:
            raise ValueError("stack entry has no name")
        warning = data.get('capture_warning')
        content = data.get('compose_file_content')
        if content is not None and not isinstance(content, str):
            # Older captures occasionally stored the decoded object
            content = json.dumps(content)
        if warning or content is None:
            content = None
        env = data.get('env_variables') or []
        if not isinstance(env, list):
            raise ValueError(f"stack '{name}' env_variables must be a list")
        return cls(
            id=data.get('id'),
            name=name,
            status=normalize_status(data.get('status')),
            manifest_content=content,
            capture_warning=warning,
            env=env,
        )


@dataclass
class ArchiveRecordSet:
    """Content of ``stack_states.json``."""
    capture_timestamp: str
    capture_version: str
    stacks: List[StackRecord] = field(default_factory=list)
    total_stacks: Optional[int] = None

    def __post_init__(self):
        if self.total_stacks is None:
            self.total_stacks = len(self.stacks)

    @property
    def names(self):
        return [s.name for s in self.stacks]

    @property
    def incomplete(self):
        return [s for s in self.stacks if not s.has_manifest]

    def to_dict(self):
        return {
            'capture_timestamp': self.capture_timestamp,
            'capture_version': self.capture_version,
            'total_stacks': self.total_stacks,
            'stacks': [s.to_dict() for s in self.stacks],
        }

    def to_json(self):
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data):
        """Build a record set, raising ValueError on schema violations."""
        if not isinstance(data, dict):
            raise ValueError("stack states document must be a JSON object")
        for key in ('capture_timestamp', 'total_stacks', 'stacks'):
            if key not in data:
                raise ValueError(f"stack states document lacks '{key}'")
        stacks = data['stacks']
        if not isinstance(stacks, list):
            raise ValueError("'stacks' must be a list")
        total = data['total_stacks']
        if not isinstance(total, int) or isinstance(total, bool):
            raise ValueError("'total_stacks' must be an integer")
        return cls(
            capture_timestamp=str(data['capture_timestamp']),
            capture_version=str(data.get('capture_version') or 'unknown'),
            stacks=[StackRecord.from_dict(s) for s in stacks],
            total_stacks=total,
        )

    @classmethod
    def from_json(cls, text):
        return cls.from_dict(json.loads(text))


class StackCapturer:
    """Snapshot every stack on a Portainer endpoint into an ArchiveRecordSet."""

    def __init__(self, client, endpoint_id=None, log_callback=None):
        self.client = client
        self.endpoint_id = endpoint_id
        self.log_callback = log_callback
        self.warnings = []

    def log(self, level, msg):
        if self.log_callback:
            self.log_callback(level, msg)
        elif level == 'ERROR':
            logger.error("%s", msg)
        elif level == 'WARNING':
            logger.warning("%s", msg)
        else:
            logger.info("%s", msg)

    def capture(self) -> ArchiveRecordSet:
        """Enumerate stacks and build the record set.

        Authentication and listing errors propagate and abort the capture.
        A stack whose compose file could not be fetched is kept with no
        manifest and reported as a warning.
        """
        self.warnings = []
        self.log('INFO', "Capturing stack states from Portainer...")
        records = self.client.list_stacks(endpoint_id=self.endpoint_id, with_manifests=True)

        collected = []
        for record in records:
            if not record.has_manifest:
                reason = record.capture_warning or 'compose file content missing'
                msg = f"Stack '{record.name}' captured without compose content: {reason}"
                self.warnings.append(PartialCaptureWarning(msg))
                self.log('WARNING', msg)
                if not record.capture_warning:
                    record = StackRecord(id=record.id, name=record.name, status=record.status,
                                         manifest_content=None, capture_warning=reason,
                                         env=record.env)
            collected.append(record)

        record_set = ArchiveRecordSet(
            capture_timestamp=display_timestamp(),
            capture_version=CAPTURE_VERSION,
            stacks=collected,
        )
        self.log('INFO', f"Stack states captured: {record_set.total_stacks} stack(s), "
                         f"{len(self.warnings)} incomplete")
        return record_set
