import json
import os
import tarfile
from datetime import datetime

import pytest

from backup_manager import archive as archive_mod
from backup_manager.archive import (
    ArchiveBuilder,
    archive_name,
    list_archives,
    metadata_path_for,
    parse_archive_name,
    select_archive,
)
from backup_manager.errors import BackupManagerError, InsufficientSpace
from backup_manager.stacks import ArchiveRecordSet, StackRecord

TS = datetime(2025, 3, 4, 5, 6, 7)


def _record_set(names=('web', 'db', 'cache')):
    stacks = [StackRecord(id=i, name=n, manifest_content=f"services:\n  {n}:\n    image: {n}\n")
              for i, n in enumerate(names, start=1)]
    return ArchiveRecordSet('2025-03-04 05:06:07', 'test', stacks)


def _touch_archive(directory, ts, label=None, metadata=None):
    path = directory / archive_name(datetime.strptime(ts, '%Y%m%d_%H%M%S'), label)
    path.write_bytes(b'x')
    if metadata is not None:
        metadata_path_for(path).write_text(json.dumps(metadata))
    return path


def test_archive_name_and_parse():
    name = archive_name(TS, 'pre upgrade')
    assert name == 'docker_backup_20250304_050607-pre-upgrade.tar.gz'
    ts, label = parse_archive_name(name)
    assert ts == TS
    assert label == 'pre-upgrade'
    assert archive_name(TS) == 'docker_backup_20250304_050607.tar.gz'
    assert parse_archive_name('docker_backup_2025_01.tar.gz') is None
    assert parse_archive_name('other.tar.gz') is None


def test_metadata_path_for():
    p = metadata_path_for('/x/docker_backup_20250304_050607.tar.gz')
    assert str(p) == '/x/docker_backup_20250304_050607.metadata'


def test_build_writes_states_first_and_data_roots(config):
    (config.tools_path / 'web').mkdir()
    (config.tools_path / 'web' / 'index.html').write_text('hi')
    (config.tools_path / 'web' / 'empty').mkdir()

    built = ArchiveBuilder(config).build(_record_set(), config.data_roots(['web']), label='nightly', timestamp=TS)

    assert built.path.name == 'docker_backup_20250304_050607-nightly.tar.gz'
    assert built.stack_count == 3
    with tarfile.open(built.path, 'r:gz') as tar:
        names = tar.getnames()
        states = json.loads(tar.extractfile('stack_states.json').read())
    assert names[0] == 'stack_states.json'
    assert states['total_stacks'] == len(states['stacks']) == 3
    root = str(config.tools_path / 'web').lstrip('/')
    assert f"{root}/index.html" in names
    assert f"{root}/empty" in names
    assert f"{str(config.portainer_path).lstrip('/')}/portainer.db" in names
    # nothing outside the declared roots
    assert not any(n.startswith(str(config.backup_path).lstrip('/')) for n in names)


def test_build_writes_metadata_sidecar(config):
    built = ArchiveBuilder(config).build(_record_set(), config.data_roots(), timestamp=TS)
    meta = json.loads(built.metadata_path.read_text())
    assert meta['timestamp'] == '2025-03-04 05:06:07'
    assert meta['stack_count'] == 3
    assert meta['stacks'] == ['web', 'db', 'cache']
    assert meta['backup_size_bytes'] == built.size
    assert meta['data_roots'] == built.data_roots
    assert meta['hostname']


def test_build_skips_missing_roots_with_warning(config, tmp_path):
    lines = []
    builder = ArchiveBuilder(config, log_callback=lambda level, msg: lines.append((level, msg)))
    built = builder.build(_record_set(), [config.portainer_path, tmp_path / 'nope'], timestamp=TS)
    assert built.skipped_roots == [str(tmp_path / 'nope')]
    assert any(level == 'WARNING' for level, _ in lines)


def test_build_rejects_relative_roots(config):
    with pytest.raises(ValueError):
        ArchiveBuilder(config).build(_record_set(), ['relative/path'], timestamp=TS)


def test_build_collapses_nested_roots(config):
    nested = config.portainer_path / 'sub'
    nested.mkdir()
    built = ArchiveBuilder(config).build(_record_set(), [nested, config.portainer_path], timestamp=TS)
    assert built.data_roots == [str(config.portainer_path)]


def test_failed_build_leaves_no_partial_archive(config, monkeypatch):
    def boom(self, *args, **kwargs):
        raise OSError(28, 'No space left on device')

    monkeypatch.setattr(tarfile.TarFile, 'add', boom)
    with pytest.raises(InsufficientSpace):
        ArchiveBuilder(config).build(_record_set(), config.data_roots(), timestamp=TS)
    assert list(config.backup_path.iterdir()) == []


def test_build_refuses_to_overwrite(config):
    builder = ArchiveBuilder(config)
    builder.build(_record_set(), config.data_roots(), timestamp=TS)
    with pytest.raises(BackupManagerError):
        builder.build(_record_set(), config.data_roots(), timestamp=TS)


def test_list_archives_orders_by_embedded_timestamp(tmp_path):
    older = _touch_archive(tmp_path, '20250101_000000', metadata={'stack_count': 2})
    newer = _touch_archive(tmp_path, '20250301_000000', label='x')
    (tmp_path / 'unrelated.tar.gz').write_text('x')
    # mtime says the opposite
    os.utime(newer, (1, 1))

    archives = list_archives(tmp_path)
    assert [a.path for a in archives] == [newer, older]
    assert archives[1].metadata == {'stack_count': 2}
    assert archives[0].label == 'x'


def test_select_archive(tmp_path):
    a1 = _touch_archive(tmp_path, '20250101_000000')
    a2 = _touch_archive(tmp_path, '20250201_000000')
    assert select_archive(tmp_path).path == a2
    assert select_archive(tmp_path, '2').path == a1
    assert select_archive(tmp_path, a1.name).path == a1
    assert select_archive(tmp_path, str(a1)).path == a1
    with pytest.raises(BackupManagerError):
        select_archive(tmp_path, '3')
    with pytest.raises(BackupManagerError):
        select_archive(tmp_path, 'docker_backup_20240101_000000.tar.gz')


def test_select_latest_in_empty_directory(tmp_path):
    with pytest.raises(BackupManagerError):
        select_archive(tmp_path)


def test_chown_handoff_uses_operating_account(config, monkeypatch):
    calls = []
    monkeypatch.setattr(archive_mod.utils, 'chown_paths', lambda paths, user, recursive=False: calls.append((paths, user)))
    built = ArchiveBuilder(config).build(_record_set(), config.data_roots(), timestamp=TS)
    assert calls == [([built.path, built.metadata_path], config.portainer_user)]
