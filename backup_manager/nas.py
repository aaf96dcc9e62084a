"""
Self-contained NAS (remote-sync) client generation.

The generated bash script carries a freshly generated Ed25519 private key,
base64 encoded inline. At run time it decodes the key into a 0600 file in a
private temporary directory, pulls archives and their metadata over
rsync/ssh, prunes the local copy to the newest N archives and removes the
key material on every exit path via an EXIT trap.
"""
import base64
import os
import shlex
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from backup_manager import __version__, utils
from backup_manager.errors import RemoteSyncError
from backup_manager.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

DEFAULT_SCRIPT_NAME = 'nas-backup-client.sh'
KEY_RESTRICTIONS = 'no-port-forwarding,no-X11-forwarding,no-agent-forwarding,no-pty'
SSH_TIMEOUT = 30


@dataclass(frozen=True)
class KeyPair:
    private_openssh: bytes
    public_openssh: str

    @property
    def private_b64(self):
        return base64.b64encode(self.private_openssh).decode('ascii')


@dataclass
class GeneratedScript:
    path: Path
    primary_host: str
    login_user: str
    remote_dir: str
    retention: int
    authorized_line: str


def generate_keypair(comment=None) -> KeyPair:
    """Generate an Ed25519 key pair in OpenSSH formats."""
    key = Ed25519PrivateKey.generate()
    private = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode('ascii')
    if comment:
        public = f"{public} {comment}"
    return KeyPair(private_openssh=private, public_openssh=public)


def authorized_keys_line(public_key):
    """Restricted authorized_keys entry; revoke by deleting this one line."""
    return f"{KEY_RESTRICTIONS} {public_key}"


class SshKeyInstaller:
    """Append a public key to the login account's authorized_keys over ssh."""

    def __init__(self, host, user, port=22, timeout=SSH_TIMEOUT, identity_file=None):
        self.host = host
        self.user = user
        self.port = port
        self.timeout = timeout
        self.identity_file = identity_file

    def command(self):
        cmd = ['ssh', '-o', 'BatchMode=yes', '-o', f"ConnectTimeout={min(self.timeout, 10)}",
               '-p', str(self.port)]
        if self.identity_file:
            cmd += ['-i', str(self.identity_file)]
        remote = ('umask 077 && mkdir -p ~/.ssh && touch ~/.ssh/authorized_keys && '
                  'cat >> ~/.ssh/authorized_keys && chmod 600 ~/.ssh/authorized_keys')
        cmd += [f"{self.user}@{self.host}", remote]
        return cmd

    def install(self, line):
        try:
            result = subprocess.run(self.command(), input=line + '\n', capture_output=True,
                                    text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise RemoteSyncError("ssh client not found; cannot install the public key")
        except subprocess.TimeoutExpired:
            raise RemoteSyncError(f"Timed out installing the public key on {self.host}",
                                  details={'host': self.host, 'user': self.user})
        if result.returncode != 0:
            raise RemoteSyncError(f"Could not install the public key on {self.user}@{self.host}",
                                  details={'returncode': result.returncode, 'stderr': result.stderr.strip()[:300]})
        logger.info("Installed NAS public key for %s@%s", self.user, self.host)


class LocalKeyInstaller:
    """Append a public key to an authorized_keys file on this host."""

    def __init__(self, authorized_keys, owner=None):
        self.authorized_keys = Path(authorized_keys)
        self.owner = owner

    def install(self, line):
        ssh_dir = self.authorized_keys.parent
        try:
            ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            with open(self.authorized_keys, 'a', encoding='utf-8') as fh:
                fh.write(line + '\n')
            os.chmod(self.authorized_keys, 0o600)
        except OSError as e:
            raise RemoteSyncError(f"Could not write {self.authorized_keys}: {e}")
        if self.owner:
            utils.chown_paths([ssh_dir, self.authorized_keys], self.owner)
        logger.info("Installed NAS public key into %s", self.authorized_keys)


def _sh(value):
    return shlex.quote(str(value))


def render_script(primary_host, login_user, primary_backup_path, remote_dir, retention, key_b64):
    """Return the client script text with all values substituted."""
    replacements = {
        '@@VERSION@@': __version__,
        '@@GENERATED@@': utils.display_timestamp(),
        '@@PRIMARY_HOST@@': _sh(primary_host),
        '@@PRIMARY_USER@@': _sh(login_user),
        '@@PRIMARY_BACKUP_PATH@@': _sh(str(primary_backup_path).rstrip('/') or '/'),
        '@@LOCAL_BACKUP_PATH@@': _sh(str(remote_dir).rstrip('/') or '/'),
        '@@RETENTION@@': str(int(retention)),
        '@@KEY_B64@@': key_b64,
    }
    text = SCRIPT_TEMPLATE
    for token, value in replacements.items():
        text = text.replace(token, value)
    return text


class NasScriptGenerator:
    """Generate a NAS client script for one remote target."""

    def __init__(self, config, installer=None, log_callback=None):
        self.config = config
        self.installer = installer
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

    def generate(self, primary_host, login_user, remote_dir, script_path=DEFAULT_SCRIPT_NAME,
                 retention: Optional[int] = None) -> GeneratedScript:
        """Create the key pair, authorize it on the primary and write the script.

        Raises RemoteSyncError if `remote_dir` is not absolute or the public
        key cannot be installed; no script is written in either case.
        """
        if not primary_host:
            raise RemoteSyncError("Primary host address is required")
        if not login_user:
            raise RemoteSyncError("Primary login account is required")
        if not str(remote_dir).startswith('/'):
            raise RemoteSyncError(f"Remote destination directory must be an absolute path: {remote_dir}",
                                  details={'remote_dir': str(remote_dir)})
        retention = self.config.remote_retention if retention is None else int(retention)
        if retention < 1:
            raise RemoteSyncError("Remote retention must be at least 1", details={'retention': retention})

        comment = f"backup-manager-nas@{socket.gethostname()}->{remote_dir}"
        keys = generate_keypair(comment=comment.replace(' ', '_'))
        line = authorized_keys_line(keys.public_openssh)

        installer = self.installer or SshKeyInstaller(primary_host, login_user)
        self.log('INFO', f"Authorizing NAS key for {login_user}@{primary_host}")
        installer.install(line)

        script = render_script(primary_host, login_user, self.config.backup_path, remote_dir,
                               retention, keys.private_b64)
        path = Path(script_path)
        tmp = path.with_name(f".{path.name}.partial")
        try:
            if path.parent and not path.parent.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o700)
            with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                fh.write(script)
            os.chmod(tmp, 0o755)
            os.replace(tmp, path)
        except OSError as e:
            try:
                tmp.unlink()
            except FileNotFoundError:
                pass
            raise RemoteSyncError(f"Could not write NAS script {path}: {e}")

        self.log('INFO', f"Self-contained NAS backup script generated: {path}")
        self.log('WARNING', "The script embeds a private key; store it like a password")
        return GeneratedScript(
            path=path,
            primary_host=primary_host,
            login_user=login_user,
            remote_dir=str(remote_dir),
            retention=retention,
            authorized_line=line,
        )


SCRIPT_TEMPLATE = r'''#!/bin/bash
# Self-contained NAS backup client
# Generated by docker-backup-manager @@VERSION@@ on @@GENERATED@@
# Usage: $0 {sync|test|list|stats}

set -euo pipefail

PRIMARY_SERVER=@@PRIMARY_HOST@@
PRIMARY_USER=@@PRIMARY_USER@@
PRIMARY_BACKUP_PATH=@@PRIMARY_BACKUP_PATH@@
LOCAL_BACKUP_PATH=@@LOCAL_BACKUP_PATH@@
RETENTION_COUNT=@@RETENTION@@

SSH_PRIVATE_KEY_B64="@@KEY_B64@@"

TEMP_DIR=""
SSH_KEY_FILE=""

log() {
    local level="$1"
    shift
    printf '%s [%s] %s\n' "$(date '+%Y-%m-%d %H:%M:%S')" "$level" "$*"
}
info() { log "INFO" "$*"; }
warn() { log "WARN" "$*"; }
error() { log "ERROR" "$*" >&2; }

cleanup() {
    if [[ -n "$TEMP_DIR" && -d "$TEMP_DIR" ]]; then
        rm -rf "$TEMP_DIR"
    fi
}
trap cleanup EXIT
trap 'exit 130' INT
trap 'exit 143' TERM

setup_ssh_key() {
    umask 077
    TEMP_DIR="$(mktemp -d "${TMPDIR:-/tmp}/docker-backup-nas.XXXXXX")"
    chmod 700 "$TEMP_DIR"
    SSH_KEY_FILE="$TEMP_DIR/primary_key"
    printf '%s' "$SSH_PRIVATE_KEY_B64" | base64 -d > "$SSH_KEY_FILE"
    chmod 600 "$SSH_KEY_FILE"
}

ssh_opts() {
    printf '%s' "-i $SSH_KEY_FILE -o BatchMode=yes -o ConnectTimeout=10 -o StrictHostKeyChecking=accept-new"
}

remote() {
    # shellcheck disable=SC2046
    ssh $(ssh_opts) "$PRIMARY_USER@$PRIMARY_SERVER" "$@"
}

test_connection() {
    info "Testing SSH connection to $PRIMARY_USER@$PRIMARY_SERVER..."
    if remote 'echo ok' >/dev/null 2>&1; then
        info "SSH connection established"
    else
        error "SSH connection to $PRIMARY_SERVER failed"
        return 1
    fi
}

list_remote() {
    local remote_dir
    remote_dir=$(printf '%q' "$PRIMARY_BACKUP_PATH")
    remote "ls -1 $remote_dir/docker_backup_*.tar.gz 2>/dev/null | sort -r" || {
        warn "Could not retrieve backup list from primary server"
        return 1
    }
}

setup_local_directory() {
    mkdir -p "$LOCAL_BACKUP_PATH"
    if [[ ! -w "$LOCAL_BACKUP_PATH" ]]; then
        error "Cannot write to backup directory: $LOCAL_BACKUP_PATH"
        return 1
    fi
}

sync_backups() {
    info "Syncing backups from $PRIMARY_SERVER:$PRIMARY_BACKUP_PATH to $LOCAL_BACKUP_PATH"
    rsync -a --partial \
        -e "ssh $(ssh_opts)" \
        --include='docker_backup_*.tar.gz' \
        --include='docker_backup_*.metadata' \
        --exclude='*' \
        "$PRIMARY_USER@$PRIMARY_SERVER:$PRIMARY_BACKUP_PATH/" "$LOCAL_BACKUP_PATH/"
    info "Backup sync completed"
}

apply_retention() {
    info "Applying retention: keeping $RETENTION_COUNT most recent backup(s)"
    local removed=0
    local archive base
    # Names embed YYYYMMDD_HHMMSS, so reverse name order is newest first
    while IFS= read -r archive; do
        [[ -z "$archive" ]] && continue
        base="${archive%.tar.gz}"
        rm -f "$LOCAL_BACKUP_PATH/$base.metadata" "$LOCAL_BACKUP_PATH/$archive"
        info "Removed old backup: $archive"
        removed=$((removed + 1))
    done < <(cd "$LOCAL_BACKUP_PATH" && ls -1 docker_backup_*.tar.gz 2>/dev/null | sort -r | tail -n +$((RETENTION_COUNT + 1)))
    info "Retention removed $removed backup(s)"
}

show_stats() {
    local count size newest oldest
    count=$(cd "$LOCAL_BACKUP_PATH" && ls -1 docker_backup_*.tar.gz 2>/dev/null | wc -l) || true
    size=$(du -sh "$LOCAL_BACKUP_PATH" 2>/dev/null | cut -f1) || true
    newest=$(cd "$LOCAL_BACKUP_PATH" && ls -1 docker_backup_*.tar.gz 2>/dev/null | sort -r | head -1) || true
    oldest=$(cd "$LOCAL_BACKUP_PATH" && ls -1 docker_backup_*.tar.gz 2>/dev/null | sort | head -1) || true
    info "Total backups: $count"
    info "Total size: ${size:-0}"
    info "Local path: $LOCAL_BACKUP_PATH"
    [[ -n "$newest" ]] && info "Newest backup: $newest"
    [[ -n "$oldest" && "$oldest" != "$newest" ]] && info "Oldest backup: $oldest"
    return 0
}

case "${1:-sync}" in
    sync|pull)
        setup_ssh_key
        test_connection
        setup_local_directory
        sync_backups
        apply_retention
        show_stats
        ;;
    test)
        setup_ssh_key
        test_connection
        ;;
    list)
        setup_ssh_key
        list_remote
        ;;
    stats)
        setup_local_directory
        show_stats
        ;;
    *)
        echo "Usage: $0 {sync|test|list|stats}"
        echo "  sync  - Pull backups from $PRIMARY_SERVER and apply retention (default)"
        echo "  test  - Test the SSH connection"
        echo "  list  - List backups on the primary server"
        echo "  stats - Show local backup statistics"
        exit 1
        ;;
esac
'''
