import dataclasses
import os
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
os.environ.setdefault('LOG_DIR', tempfile.mkdtemp(prefix='backup-manager-logs-'))

import pytest

from backup_manager.config import BackupConfig
from backup_manager.errors import NotFoundError, StackConflict
from backup_manager.stacks import STATUS_ACTIVE, STATUS_INACTIVE, StackRecord


class FakePortainer:
    """In-memory stand-in for PortainerClient."""

    def __init__(self, stacks=None):
        self.stacks = []
        self.next_id = 1
        self.token = 'fake-token'
        self.auth_calls = []
        self.create_calls = []
        self.fail_create = {}
        self.env_calls = {}
        self.actions = []
        self.fail_action = {}
        for name, manifest in (stacks or {}).items():
            self.add(name, manifest)

    def add(self, name, manifest, status='Active', env=None):
        record = StackRecord(id=self.next_id, name=name, status=status, manifest_content=manifest,
                             env=list(env or []))
        self.next_id += 1
        self.stacks.append(record)
        return record

    def authenticate(self, username, password):
        self.auth_calls.append((username, password))
        self.token = 'fake-token'
        return self.token

    def list_stacks(self, endpoint_id=None, with_manifests=True):
        return list(self.stacks)

    def find_stack(self, name, endpoint_id=None):
        for s in self.stacks:
            if s.name == name:
                return s
        return None

    def create_stack(self, name, manifest_content, endpoint_id=None, env=None):
        self.create_calls.append((name, manifest_content))
        self.env_calls[name] = env
        if name in self.fail_create:
            raise self.fail_create[name]
        if self.find_stack(name):
            raise StackConflict(f"Stack '{name}' already exists")
        return self.add(name, manifest_content, env=env)

    def delete_stack(self, stack_id, endpoint_id=None):
        self.stacks = [s for s in self.stacks if s.id != stack_id]
        return True

    def _set_status(self, action, stack_id, status):
        self.actions.append((action, stack_id))
        if (action, stack_id) in self.fail_action:
            raise self.fail_action[(action, stack_id)]
        for i, s in enumerate(self.stacks):
            if s.id == stack_id:
                self.stacks[i] = dataclasses.replace(s, status=status)
                return True
        raise NotFoundError(f"Stack {stack_id} not found")

    def stop_stack(self, stack_id, endpoint_id=None):
        return self._set_status('stop', stack_id, STATUS_INACTIVE)

    def start_stack(self, stack_id, endpoint_id=None):
        return self._set_status('start', stack_id, STATUS_ACTIVE)

    @property
    def names(self):
        return sorted(s.name for s in self.stacks)


def make_config(base, **overrides):
    base = Path(base)
    values = dict(
        portainer_path=base / 'opt' / 'portainer',
        npm_path=base / 'opt' / 'nginx-proxy-manager',
        tools_path=base / 'opt' / 'tools',
        backup_path=base / 'backup',
        lock_dir=base / 'locks',
        portainer_user='nobody-backup-test',
    )
    values.update(overrides)
    return BackupConfig(**values)


@pytest.fixture
def config(tmp_path):
    cfg = make_config(tmp_path)
    cfg.portainer_path.mkdir(parents=True)
    (cfg.portainer_path / 'portainer.db').write_text('portainer-data')
    cfg.npm_path.mkdir(parents=True)
    (cfg.npm_path / 'data').mkdir()
    (cfg.npm_path / 'data' / 'npm.sqlite').write_text('npm-data')
    cfg.tools_path.mkdir(parents=True)
    return cfg


@pytest.fixture
def fake_client():
    return FakePortainer()
