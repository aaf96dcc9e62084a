import io
import json
import tarfile
from datetime import datetime

import pytest

from backup_manager.archive import ArchiveBuilder, archive_name
from backup_manager.errors import ArchiveCorrupt
from backup_manager.stacks import ArchiveRecordSet, StackRecord
from backup_manager.validator import validate


def _states(total=None, stacks=None):
    stacks = stacks if stacks is not None else [
        {'id': 1, 'name': 'web', 'status': 'Active', 'compose_file_content': 'services: {}\n'},
    ]
    return {
        'capture_timestamp': '2025-01-01 00:00:00',
        'capture_version': 'test',
        'total_stacks': len(stacks) if total is None else total,
        'stacks': stacks,
    }


def _write_tar(path, members):
    with tarfile.open(path, 'w:gz') as tar:
        for name, data in members:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


def _archive_path(tmp_path):
    return tmp_path / archive_name(datetime(2025, 1, 1, 0, 0, 0))


def test_built_archive_is_valid(config):
    rs = ArchiveRecordSet('2025-01-01 00:00:00', 'v', [StackRecord(id=1, name='web', manifest_content='x')])
    built = ArchiveBuilder(config).build(rs, config.data_roots(), timestamp=datetime(2025, 1, 1))
    report = validate(built.path)
    assert report.valid, report.reason
    assert report.record_set.total_stacks == 1
    assert str(config.portainer_path) in report.roots_present
    # tools path is empty but still present as a directory entry
    assert report.warnings == []


def test_missing_file(tmp_path):
    report = validate(tmp_path / 'docker_backup_20250101_000000.tar.gz')
    assert not report.valid


def test_truncated_archive_is_invalid(config):
    rs = ArchiveRecordSet('2025-01-01 00:00:00', 'v', [])
    (config.portainer_path / 'big.bin').write_bytes(bytes(range(256)) * 4096)
    built = ArchiveBuilder(config).build(rs, config.data_roots(), timestamp=datetime(2025, 1, 1))
    data = built.path.read_bytes()
    built.path.write_bytes(data[: len(data) // 2])
    report = validate(built.path)
    assert not report.valid
    assert 'unreadable' in report.reason
    with pytest.raises(ArchiveCorrupt):
        report.raise_for_invalid()


def test_not_gzip_is_invalid(tmp_path):
    path = _archive_path(tmp_path)
    path.write_text('plain text, not an archive')
    assert not validate(path).valid


def test_missing_stack_states(tmp_path):
    path = _write_tar(_archive_path(tmp_path), [('opt/portainer/x', b'1')])
    report = validate(path)
    assert not report.valid
    assert 'missing' in report.reason


def test_stack_states_must_be_at_root(tmp_path):
    data = json.dumps(_states()).encode()
    path = _write_tar(_archive_path(tmp_path), [('nested/stack_states.json', data)])
    assert not validate(path).valid


def test_duplicate_stack_states(tmp_path):
    data = json.dumps(_states()).encode()
    path = _write_tar(_archive_path(tmp_path), [('stack_states.json', data), ('./stack_states.json', data)])
    report = validate(path)
    assert not report.valid
    assert 'times' in report.reason


def test_total_stacks_mismatch(tmp_path):
    data = json.dumps(_states(total=5)).encode()
    path = _write_tar(_archive_path(tmp_path), [('stack_states.json', data)])
    report = validate(path)
    assert not report.valid
    assert 'total_stacks' in report.reason


def test_duplicate_stack_names(tmp_path):
    stacks = [
        {'id': 1, 'name': 'web', 'status': 'Active', 'compose_file_content': 'a'},
        {'id': 2, 'name': 'web', 'status': 'Active', 'compose_file_content': 'b'},
    ]
    path = _write_tar(_archive_path(tmp_path), [('stack_states.json', json.dumps(_states(stacks=stacks)).encode())])
    assert not validate(path).valid


def test_schema_violation(tmp_path):
    path = _write_tar(_archive_path(tmp_path), [('stack_states.json', b'{"stacks": "nope"}')])
    report = validate(path)
    assert not report.valid
    assert 'schema' in report.reason


def test_unsafe_member_path(tmp_path):
    data = json.dumps(_states()).encode()
    path = _write_tar(_archive_path(tmp_path), [('stack_states.json', data), ('../escape', b'x')])
    report = validate(path)
    assert not report.valid
    assert 'unsafe' in report.reason


def test_incomplete_capture_and_missing_root_are_warnings(tmp_path):
    stacks = [
        {'id': 1, 'name': 'web', 'status': 'Active', 'compose_file_content': '', 'capture_warning': 'HTTP 500'},
    ]
    path = _write_tar(_archive_path(tmp_path), [('stack_states.json', json.dumps(_states(stacks=stacks)).encode())])
    report = validate(path, expected_roots=['/opt/tools'])
    assert report.valid
    assert any('web' in w for w in report.warnings)
    assert any('/opt/tools' in w for w in report.warnings)
