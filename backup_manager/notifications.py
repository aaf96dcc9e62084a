"""
Outcome notifications via Apprise.

Sending is best-effort: failures are logged and never change the outcome of
the backup or restore that triggered them.
"""
import apprise

from backup_manager import utils
from backup_manager.utils import get_logger

logger = get_logger(__name__)


def get_apprise_instance(urls):
    """Create an Apprise instance with every URL that could be added."""
    apobj = apprise.Apprise()
    added = 0
    for url in urls or ():
        url = url.strip()
        if not url:
            continue
        try:
            if apobj.add(url):
                added += 1
            else:
                logger.warning("Apprise: failed to add URL: %s", url)
        except Exception as e:
            logger.warning("Apprise: exception while adding URL %s: %s", url, e)
    if added == 0:
        logger.debug("Apprise: no services configured; notifications will be skipped")
    return apobj, added


def should_notify(config, success):
    if not config.apprise_urls:
        return False
    return config.notify_on_success if success else config.notify_on_failure


def send_notification(config, title, body):
    """Send a plain-text notification; returns True if Apprise reported success."""
    apobj, added = get_apprise_instance(config.apprise_urls)
    if not added:
        return False
    try:
        sent = apobj.notify(title=title, body=body)
    except Exception as e:
        logger.warning("Apprise: exception during notify: %s", e)
        return False
    if sent:
        logger.info("Notification sent: %s", title)
    else:
        logger.warning("Notification could not be delivered: %s", title)
    return bool(sent)


def backup_message(result):
    """Build (title, body) for a backup executor result dict."""
    success = result.get('status') == 'success'
    lines = []
    if success:
        title = f"Backup completed: {result.get('archive_name')}"
        lines.append(f"Archive: {result.get('archive_name')}")
        lines.append(f"Size: {utils.format_bytes(result.get('size'))}")
        lines.append(f"Stacks: {result.get('stack_count', 0)}")
    else:
        title = "Backup failed"
        lines.append(f"Error: {result.get('error') or 'unknown error'}")
    if result.get('duration') is not None:
        lines.append(f"Duration: {utils.format_duration(result.get('duration'))}")
    for w in result.get('warnings') or []:
        lines.append(f"Warning: {w}")
    removed = [p for p in result.get('removed') or [] if str(p).endswith('.tar.gz')]
    if removed:
        lines.append(f"Retention removed {len(removed)} old backup(s)")
    return title, '\n'.join(lines)


def restore_message(report):
    """Build (title, body) for a RestoreReport."""
    if report.success:
        title = f"Restore completed: {report.archive_name}"
    elif report.changed:
        title = f"Restore partially applied: {report.archive_name}"
    else:
        title = f"Restore failed, nothing was changed: {report.archive_name}"
    lines = [
        f"State: {report.state.value}",
        f"Created: {', '.join(report.created) or '-'}",
        f"Skipped: {', '.join(report.skipped) or '-'}",
        f"Failed: {', '.join(report.failed) or '-'}",
    ]
    if report.error:
        lines.append(f"Error: {report.error}")
    return title, '\n'.join(lines)


def notify_backup(config, result):
    success = result.get('status') == 'success'
    if not should_notify(config, success):
        return False
    title, body = backup_message(result)
    return send_notification(config, title, body)


def notify_restore(config, report):
    if not should_notify(config, report.success):
        return False
    title, body = restore_message(report)
    return send_notification(config, title, body)
