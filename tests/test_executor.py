import dataclasses
import json
import tarfile
from pathlib import Path

import pytest

from backup_manager import executor as executor_mod
from backup_manager.config import Credentials
from backup_manager.errors import ApiUnavailable, BackupManagerError, LockError
from backup_manager.executor import BackupExecutor
from backup_manager.lock import operation_lock

from conftest import FakePortainer


@pytest.fixture
def sent(monkeypatch):
    calls = []
    monkeypatch.setattr(executor_mod, 'notify_backup', lambda config, result: calls.append(result) or True)
    return calls


def _client():
    client = FakePortainer()
    client.add('web', json.dumps({'StackFileContent': 'services:\n  web:\n    image: nginx\n'}))
    client.add('db', json.dumps({'StackFileContent': 'services:\n  db:\n    image: postgres\n'}), status='Inactive')
    return client


def test_backup_run_produces_archive_and_result(config, sent):
    (config.tools_path / 'web').mkdir()
    (config.tools_path / 'web' / 'site.conf').write_text('server {}')

    result = BackupExecutor(config, client=_client()).run()

    assert result['status'] == 'success'
    assert result['stack_count'] == 2
    assert result['stacks'] == ['web', 'db']
    path = Path(result['archive_path'])
    assert path.exists()
    assert Path(result['metadata_path']).exists()
    assert str(config.tools_path / 'web') in result['data_roots']
    with tarfile.open(path, 'r:gz') as tar:
        states = json.loads(tar.extractfile('stack_states.json').read())
    assert [s['status'] for s in states['stacks']] == ['Active', 'Inactive']
    assert any('Phase 4' in line for line in result['log'])
    assert sent and sent[0]['status'] == 'success'


def test_retention_runs_after_build(config, sent):
    config.backup_path.mkdir()
    for day in range(1, 9):
        stamp = f"2024010{day}_020000"
        (config.backup_path / f"docker_backup_{stamp}.tar.gz").write_bytes(b'old')
        (config.backup_path / f"docker_backup_{stamp}.metadata").write_text('{}')

    result = BackupExecutor(config, client=_client()).run()

    archives = sorted(config.backup_path.glob('docker_backup_*.tar.gz'))
    assert len(archives) == config.backup_retention
    assert Path(result['archive_path']) in archives
    assert any(r.endswith('docker_backup_20240101_020000.tar.gz') for r in result['removed'])


def test_retention_can_be_disabled(config, sent):
    config.backup_path.mkdir()
    for day in range(1, 9):
        (config.backup_path / f"docker_backup_2024010{day}_020000.tar.gz").write_bytes(b'old')

    result = BackupExecutor(config, client=_client(), run_retention=False).run()

    assert result['removed'] == []
    assert len(list(config.backup_path.glob('docker_backup_*.tar.gz'))) == 9


def test_capture_failure_is_reported_and_raised(config, sent):
    class DownPortainer(FakePortainer):
        def list_stacks(self, endpoint_id=None, with_manifests=True):
            raise ApiUnavailable("Portainer API unreachable")

    with pytest.raises(ApiUnavailable):
        BackupExecutor(config, client=DownPortainer()).run()

    assert sent and sent[0]['status'] == 'failed'
    assert 'unreachable' in sent[0]['error']
    assert list(config.backup_path.glob('*.tar.gz')) == []


def test_unauthenticated_client_uses_credentials(config, sent):
    client = _client()
    client.token = None
    BackupExecutor(config, client=client, credentials=Credentials('admin', 'pw')).run()
    assert client.auth_calls == [('admin', 'pw')]


def test_partial_capture_becomes_warning(config, sent):
    client = _client()
    client.stacks.append(client.stacks[0].__class__(id=9, name='broken', manifest_content=None,
                                                    capture_warning='HTTP 500'))
    result = BackupExecutor(config, client=client).run()
    assert result['status'] == 'success'
    assert any('broken' in w for w in result['warnings'])


def test_concurrent_run_is_rejected(config, sent):
    with operation_lock('operation', config.lock_dir, operation='restore'):
        with pytest.raises(LockError):
            BackupExecutor(config, client=_client()).run()


def test_notification_errors_do_not_fail_backup(config, monkeypatch):
    def boom(config, result):
        raise RuntimeError('apprise exploded')

    monkeypatch.setattr(executor_mod, 'notify_backup', boom)
    result = BackupExecutor(config, client=_client()).run()
    assert result['status'] == 'success'


def test_running_stacks_are_stopped_for_the_build_and_restarted(config, sent, monkeypatch):
    client = _client()
    seen = []
    original_build = executor_mod.ArchiveBuilder.build

    def build(self, record_set, roots, **kwargs):
        seen.append({s.name: s.status for s in client.stacks})
        return original_build(self, record_set, roots, **kwargs)

    monkeypatch.setattr(executor_mod.ArchiveBuilder, 'build', build)
    result = BackupExecutor(config, client=client).run()

    assert result['status'] == 'success'
    assert seen == [{'web': 'Inactive', 'db': 'Inactive'}]
    web, db = client.stacks
    assert client.actions == [('stop', web.id), ('start', web.id)]
    assert web.status == 'Active'
    assert db.status == 'Inactive'


def test_stacks_are_restarted_when_the_build_fails(config, sent, monkeypatch):
    def build(self, record_set, roots, **kwargs):
        raise BackupManagerError("No space left on device")

    monkeypatch.setattr(executor_mod.ArchiveBuilder, 'build', build)
    client = _client()

    with pytest.raises(BackupManagerError):
        BackupExecutor(config, client=client).run()

    web = client.find_stack('web')
    assert client.actions == [('stop', web.id), ('start', web.id)]
    assert web.status == 'Active'
    assert sent and 'No space left' in sent[0]['error']


def test_failed_restart_fails_the_backup(config, sent):
    client = _client()
    web = client.find_stack('web')
    client.fail_action[('start', web.id)] = ApiUnavailable('Portainer API timed out')

    with pytest.raises(BackupManagerError) as excinfo:
        BackupExecutor(config, client=client).run()

    assert 'Failed to restart' in str(excinfo.value)
    assert sent[0]['status'] == 'failed'
    assert sent[0]['archive_path'] is not None
    assert any("'web' was not restarted" in w for w in sent[0]['warnings'])


def test_failed_stop_restarts_stacks_already_stopped(config, sent):
    client = _client()
    client.stacks = [client.stacks[0]]
    second = client.add('api', 'services: {}\n')
    client.fail_action[('stop', second.id)] = ApiUnavailable('Portainer API timed out')

    with pytest.raises(BackupManagerError):
        BackupExecutor(config, client=client).run()

    web = client.find_stack('web')
    assert client.actions == [('stop', web.id), ('stop', second.id), ('start', web.id)]
    assert web.status == 'Active'
    assert list(config.backup_path.glob('*.tar.gz')) == []


def test_stopping_can_be_disabled(config, sent):
    cfg = dataclasses.replace(config, stop_stacks=False)
    client = _client()
    result = BackupExecutor(cfg, client=client).run()
    assert result['status'] == 'success'
    assert client.actions == []
    assert any('without stopping stacks' in line for line in result['log'])
