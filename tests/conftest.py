"""Shared pytest fixtures for reconciler tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import ResourceId  # noqa: E402
from config import EngineSettings  # noqa: E402
from document import Document  # noqa: E402

DOCUMENTS_DIR = Path(__file__).parent.parent / 'documents'


class FakeBackend:
    """In-memory provisioning backend.

    Assigns ids '<type>-<n>', echoes desired attributes and adds a few
    computed ones (arn, dns_name, endpoint, name). Failures can be queued
    per identity; each call pops the next one.
    """

    def __init__(self):
        self.calls: list[tuple[str, ResourceId, dict]] = []
        self.failures: dict[ResourceId, list[Exception]] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def fail(self, identity: ResourceId, *errors: Exception) -> None:
        self.failures.setdefault(identity, []).extend(errors)

    def apply(self, action, identity, desired_attributes):
        with self._lock:
            self.calls.append((action.value, identity, dict(desired_attributes)))
            queued = self.failures.get(identity)
            if queued:
                raise queued.pop(0)
            if action.value == 'destroy':
                return '', {}
            self._counter += 1
            assigned = f'{identity.type}-{self._counter}'
        observed = dict(desired_attributes)
        observed.setdefault('arn', f'arn:fake:{identity.type}/{identity.name}')
        observed.setdefault('name', identity.name)
        if identity.type == 'aws_lb':
            observed['dns_name'] = f'{identity.name}.elb.example.com'
        if identity.type == 'aws_db_instance':
            observed['endpoint'] = f'{identity.name}.db.example.com:5432'
        return assigned, observed

    def actions(self) -> list[tuple[str, str]]:
        return [(action, str(identity)) for action, identity, _ in self.calls]


def make_document(resources, name='test', outputs=None, settings=None, replace_on=None) -> Document:
    """Helper to create a document from resource dicts."""
    data = {'name': name, 'resources': resources}
    if replace_on:
        data['replace_on'] = replace_on
    if outputs:
        data['outputs'] = outputs
    if settings:
        data['settings'] = settings
    return Document.from_dict(data)


def rid(value: str) -> ResourceId:
    return ResourceId.parse(value)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def fast_settings(tmp_path):
    """Settings with no real backoff delay and a temporary state dir."""
    return EngineSettings(max_workers=4, max_attempts=3, backoff_base=0.0,
                          backoff_max=0.0, state_dir=tmp_path / 'state')


@pytest.fixture
def subnet_instance_doc():
    """Subnet S, then instance I referencing S's id."""
    return make_document([
        {'type': 'aws_subnet', 'name': 's', 'attributes': {'cidr_block': '10.0.1.0/24'}},
        {'type': 'aws_instance', 'name': 'i', 'attributes': {
            'subnet_id': 'ref(aws_subnet, s, id)',
            'instance_type': 't3.micro',
        }},
    ], name='subnet-instance')


@pytest.fixture
def aws_document_path():
    return DOCUMENTS_DIR / 'aws-network.yaml'
