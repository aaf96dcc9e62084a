"""CLI entrypoint for backup manager jobs.

Usage:
  python -m backup_manager.run_job [--config-file PATH] backup [--label LABEL] [--no-retention]
  python -m backup_manager.run_job restore [SELECTOR] [--stacks-only]
  python -m backup_manager.run_job list
  python -m backup_manager.run_job validate [SELECTOR]
  python -m backup_manager.run_job retention [--keep N]
  python -m backup_manager.run_job generate-nas-script --host HOST --remote-dir DIR [...]

SELECTOR is 'latest' (default), a 1-based index from `list`, an archive file
name or a path.

Exit codes: 0 success, 1 failure with nothing changed, 2 configuration or
usage error, 3 restore failed after the host was changed.
"""
import argparse
import json
import sys

from backup_manager import __version__, utils
from backup_manager.archive import list_archives, select_archive
from backup_manager.config import load_config, load_credentials
from backup_manager.errors import BackupManagerError, ConfigError
from backup_manager.executor import BackupExecutor
from backup_manager.nas import DEFAULT_SCRIPT_NAME, LocalKeyInstaller, NasScriptGenerator
from backup_manager.notifications import notify_restore
from backup_manager.portainer import PortainerClient
from backup_manager.restore import RestoreOrchestrator
from backup_manager.retention import enforce
from backup_manager.utils import setup_logging, get_logger
from backup_manager.validator import validate

# Configure logging using centralized setup so LOG_LEVEL is respected
setup_logging()
logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_PARTIAL = 3


def parse_args(argv):
    parser = argparse.ArgumentParser(prog='docker-backup-manager')
    parser.add_argument('--config-file', type=str, help='Configuration file (default: $BACKUP_MANAGER_CONFIG or /etc/docker-backup-manager.conf)')
    parser.add_argument('--json', action='store_true', help='Print results as JSON')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('backup', help='Capture stacks and create a backup archive')
    p.add_argument('--label', type=str, help='Optional label appended to the archive name')
    p.add_argument('--no-retention', action='store_true', help='Skip local retention after the backup')

    p = sub.add_parser('restore', help='Restore data and stacks from an archive')
    p.add_argument('selector', nargs='?', default='latest')
    p.add_argument('--stacks-only', action='store_true', help='Recreate stacks without replacing data directories')

    sub.add_parser('list', help='List available backups, newest first')

    p = sub.add_parser('validate', help='Check archive integrity and structure')
    p.add_argument('selector', nargs='?', default='latest')

    p = sub.add_parser('retention', help='Delete backups beyond the retention count')
    p.add_argument('--keep', type=int, help='Number of backups to keep (default: BACKUP_RETENTION)')

    p = sub.add_parser('generate-nas-script', help='Generate a self-contained NAS sync client')
    p.add_argument('--host', required=True, help='Address the NAS uses to reach this host')
    p.add_argument('--user', help='Login account on this host (default: PORTAINER_USER)')
    p.add_argument('--remote-dir', required=True, help='Absolute backup directory on the NAS')
    p.add_argument('--output', default=DEFAULT_SCRIPT_NAME, help='Script path to write')
    p.add_argument('--retention', type=int, help='Backups to keep on the NAS (default: REMOTE_RETENTION)')
    p.add_argument('--authorized-keys', help='Install the key into this local authorized_keys file instead of over ssh')

    return parser.parse_args(argv)


def _print(args, data, text_lines):
    if args.json:
        print(json.dumps(data, indent=2, default=str))
    else:
        for line in text_lines:
            print(line)


def cmd_backup(args, config):
    executor = BackupExecutor(config, label=args.label, run_retention=not args.no_retention)
    result = executor.run()
    lines = [
        f"Backup created: {result['archive_path']}",
        f"Size: {utils.format_bytes(result['size'])}",
        f"Stacks: {result['stack_count']}",
    ]
    lines += [f"Warning: {w}" for w in result['warnings']]
    _print(args, {k: v for k, v in result.items() if k != 'log'}, lines)
    return EXIT_OK


def cmd_restore(args, config):
    info = select_archive(config.backup_path, args.selector)
    credentials = load_credentials(config)
    client = PortainerClient.from_config(config, credentials)
    orchestrator = RestoreOrchestrator(config, client, credentials=credentials, place_data=not args.stacks_only)
    report = orchestrator.restore(info.path)
    try:
        notify_restore(config, report)
    except Exception as e:
        logger.warning("Failed to send restore notification: %s", e)

    lines = [
        f"Restore of {report.archive_name}: {report.state.value}",
        f"Created: {', '.join(report.created) or '-'}",
        f"Skipped: {', '.join(report.skipped) or '-'}",
        f"Failed: {', '.join(report.failed) or '-'}",
    ]
    if report.error:
        lines.append(f"Error: {report.error}")
        lines.append("Host was partially changed" if report.changed else "Nothing was changed")
    _print(args, report.to_dict(), lines)
    if report.success:
        return EXIT_OK
    return EXIT_PARTIAL if report.changed else EXIT_FAILED


def cmd_list(args, config):
    archives = list_archives(config.backup_path)
    lines = []
    if not archives:
        lines.append(f"No backups found in {config.backup_path}")
    for idx, a in enumerate(archives, start=1):
        stacks = (a.metadata or {}).get('stack_count')
        lines.append(f"{idx:3d}) {a.name}  {a.timestamp:%Y-%m-%d %H:%M:%S}  "
                     f"{utils.format_bytes(a.size)}  stacks: {stacks if stacks is not None else '?'}")
    _print(args, [a.to_dict() for a in archives], lines)
    return EXIT_OK


def cmd_validate(args, config):
    info = select_archive(config.backup_path, args.selector)
    report = validate(info.path)
    lines = [f"{report.path.name}: {'valid' if report.valid else 'INVALID'}"]
    if report.reason:
        lines.append(f"Reason: {report.reason}")
    lines += [f"Warning: {w}" for w in report.warnings]
    _print(args, report.to_dict(), lines)
    return EXIT_OK if report.valid else EXIT_FAILED


def cmd_retention(args, config):
    keep = args.keep if args.keep is not None else config.backup_retention
    if keep < 1:
        raise ConfigError("--keep must be at least 1")
    removed = enforce(config.backup_path, keep)
    _print(args, [str(p) for p in removed], [f"Removed: {p}" for p in removed] or ["Nothing to remove"])
    return EXIT_OK


def cmd_generate_nas_script(args, config):
    user = args.user or config.portainer_user
    installer = None
    if args.authorized_keys:
        installer = LocalKeyInstaller(args.authorized_keys, owner=user)
    generator = NasScriptGenerator(config, installer=installer)
    script = generator.generate(args.host, user, args.remote_dir, script_path=args.output, retention=args.retention)
    lines = [
        f"NAS backup script generated: {script.path}",
        f"Copy it to the NAS and run: {script.path.name} test",
    ]
    _print(args, {'path': str(script.path), 'host': script.primary_host, 'user': script.login_user,
                  'remote_dir': script.remote_dir, 'retention': script.retention}, lines)
    return EXIT_OK


COMMANDS = {
    'backup': cmd_backup,
    'restore': cmd_restore,
    'list': cmd_list,
    'validate': cmd_validate,
    'retention': cmd_retention,
    'generate-nas-script': cmd_generate_nas_script,
}


def main(argv=None):
    args = parse_args(argv if argv is not None else sys.argv[1:])
    try:
        config = load_config(args.config_file)
        return COMMANDS[args.command](args, config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG
    except BackupManagerError as e:
        logger.error("%s failed: %s", args.command, e)
        return EXIT_FAILED


if __name__ == '__main__':
    sys.exit(main())
