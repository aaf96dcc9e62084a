"""
Configuration and credentials loading.

Both files use shell-style ``KEY="value"`` lines so they stay compatible with
the files written during host setup. Loading yields an explicit, immutable
`BackupConfig` that every component receives at construction.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from backup_manager.errors import ConfigError
from backup_manager.utils import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = '/etc/docker-backup-manager.conf'
CONFIG_ENV_VAR = 'BACKUP_MANAGER_CONFIG'
CREDENTIALS_FILE_NAME = '.credentials'
NPM_STACK_NAME = 'nginx-proxy-manager'

DEFAULTS = {
    'PORTAINER_PATH': '/opt/portainer',
    'NPM_PATH': '/opt/nginx-proxy-manager',
    'TOOLS_PATH': '/opt/tools',
    'BACKUP_PATH': '/opt/backup',
    'BACKUP_RETENTION': '7',
    'REMOTE_RETENTION': '30',
    'PORTAINER_USER': 'portainer',
    'PORTAINER_API_URL': 'http://localhost:9000/api',
    'PORTAINER_ENDPOINT_ID': '1',
    'API_TIMEOUT': '10',
    'LOCK_DIR': '/tmp',
    'APPRISE_URLS': '',
    'NOTIFY_ON_SUCCESS': 'false',
    'NOTIFY_ON_FAILURE': 'true',
    'STOP_STACKS': 'true',
}


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str
    api_url: Optional[str] = None


@dataclass(frozen=True)
class BackupConfig:
    portainer_path: Path
    npm_path: Path
    tools_path: Path
    backup_path: Path
    backup_retention: int = 7
    remote_retention: int = 30
    portainer_user: str = 'portainer'
    api_url: str = 'http://localhost:9000/api'
    endpoint_id: int = 1
    api_timeout: float = 10.0
    lock_dir: Path = Path('/tmp')
    apprise_urls: Tuple[str, ...] = field(default_factory=tuple)
    notify_on_success: bool = False
    notify_on_failure: bool = True
    stop_stacks: bool = True
    source: Optional[str] = None

    @property
    def credentials_file(self):
        return self.portainer_path / CREDENTIALS_FILE_NAME

    def data_roots(self, stack_names=None) -> List[Path]:
        """Return the ordered list of data roots to include in an archive.

        The Portainer and reverse-proxy directories always come first. Custom
        stacks contribute ``TOOLS_PATH/<name>`` when it exists; if none does,
        the whole tools directory is used instead.
        """
        roots = [self.portainer_path, self.npm_path]
        custom = []
        for name in stack_names or []:
            if name == NPM_STACK_NAME:
                continue
            candidate = self.tools_path / name
            if candidate.is_dir() and candidate not in custom:
                custom.append(candidate)
        if custom:
            roots.extend(custom)
        elif self.tools_path.is_dir():
            roots.append(self.tools_path)
        return roots


def parse_env_file(path):
    """Parse a ``KEY=value`` file into a dict.

    Blank lines and ``#`` comments are skipped, an optional ``export`` prefix
    is accepted and one level of matching quotes is stripped from values.
    """
    values = {}
    with open(path, 'r', encoding='utf-8') as fh:
        for raw in fh:
            line = raw.strip()
            if not line or line.startswith('#'):
                continue
            if line.startswith('export '):
                line = line[len('export '):].strip()
            if '=' not in line:
                logger.debug("Ignoring malformed line in %s: %r", path, line)
                continue
            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]
            values[key] = value
    return values


def _as_bool(value):
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _as_int(values, key):
    try:
        return int(values[key])
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer", details={'value': values.get(key)})


def _split_urls(value):
    urls = []
    for chunk in (value or '').replace(',', '\n').splitlines():
        chunk = chunk.strip()
        if chunk:
            urls.append(chunk)
    return tuple(urls)


def load_config(path=None) -> BackupConfig:
    """Load configuration from `path`, the env override or the default file.

    A missing file yields defaults. Empty or relative paths are rejected here
    so that no later step ever writes to an empty or cwd-dependent destination.
    """
    config_path = path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE
    values = dict(DEFAULTS)
    source = None

    if os.path.isfile(config_path):
        logger.info("Loading configuration from: %s", config_path)
        try:
            values.update({k: v for k, v in parse_env_file(config_path).items() if k in DEFAULTS})
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file: {e}", details={'path': config_path})
        source = config_path
    elif path:
        raise ConfigError(f"Configuration file not found: {path}", details={'path': path})
    else:
        logger.debug("No configuration file at %s; using defaults", config_path)

    for key in ('PORTAINER_PATH', 'NPM_PATH', 'TOOLS_PATH', 'BACKUP_PATH'):
        if not values.get(key):
            raise ConfigError(f"{key} must not be empty", details={'source': source})
        if not os.path.isabs(values[key]):
            raise ConfigError(f"{key} must be an absolute path", details={'value': values[key], 'source': source})

    retention = _as_int(values, 'BACKUP_RETENTION')
    remote_retention = _as_int(values, 'REMOTE_RETENTION')
    if retention < 1 or remote_retention < 1:
        raise ConfigError("Retention counts must be at least 1",
                          details={'BACKUP_RETENTION': retention, 'REMOTE_RETENTION': remote_retention})

    try:
        timeout = float(values['API_TIMEOUT'])
    except ValueError:
        raise ConfigError("API_TIMEOUT must be a number", details={'value': values['API_TIMEOUT']})

    return BackupConfig(
        portainer_path=Path(values['PORTAINER_PATH']),
        npm_path=Path(values['NPM_PATH']),
        tools_path=Path(values['TOOLS_PATH']),
        backup_path=Path(values['BACKUP_PATH']),
        backup_retention=retention,
        remote_retention=remote_retention,
        portainer_user=values['PORTAINER_USER'],
        api_url=values['PORTAINER_API_URL'].rstrip('/'),
        endpoint_id=_as_int(values, 'PORTAINER_ENDPOINT_ID'),
        api_timeout=timeout,
        lock_dir=Path(values['LOCK_DIR'] or '/tmp'),
        apprise_urls=_split_urls(values['APPRISE_URLS']),
        notify_on_success=_as_bool(values['NOTIFY_ON_SUCCESS']),
        notify_on_failure=_as_bool(values['NOTIFY_ON_FAILURE']),
        stop_stacks=_as_bool(values['STOP_STACKS']),
        source=source,
    )


def load_credentials(config: BackupConfig) -> Credentials:
    """Read the Portainer admin login from the credentials file."""
    path = config.credentials_file
    if not path.is_file():
        raise ConfigError(f"Portainer credentials file not found: {path}", details={'path': str(path)})
    try:
        values = parse_env_file(path)
    except OSError as e:
        raise ConfigError(f"Cannot read credentials file: {e}", details={'path': str(path)})

    username = values.get('PORTAINER_ADMIN_USERNAME', '')
    password = values.get('PORTAINER_ADMIN_PASSWORD', '')
    if not username or not password:
        raise ConfigError("Credentials file lacks PORTAINER_ADMIN_USERNAME/PORTAINER_ADMIN_PASSWORD",
                          details={'path': str(path)})
    api_url = values.get('PORTAINER_API_URL') or None
    return Credentials(username=username, password=password, api_url=api_url.rstrip('/') if api_url else None)
