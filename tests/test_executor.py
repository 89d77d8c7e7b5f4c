#!/usr/bin/env python3
"""Tests for reconciler/executor.py - batch execution.

Tests verify:
1. Incremental state persistence per step
2. Failure isolation (failed node, blocked dependents, independent siblings)
3. Retry with exponential backoff for retryable provider errors
4. Cancellation between batches
5. Fatal State Store errors
6. Replacement fail-safe
"""

import os
import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ErrorKind, ProviderError, StoreCorrupt, StoreWriteError
from config import EngineSettings
from conftest import make_document, rid
from reconciler.differ import Differ
from reconciler.executor import Executor
from reconciler.graph import ResourceGraph
from reconciler.planner import Planner
from reconciler.providers import Action, ProviderRegistry
from reconciler.report import NodeStatus, RunReport
from reconciler.state import StateStore

SUBNET = rid('aws_subnet.s')
INSTANCE = rid('aws_instance.i')


def _plan(document, registry, store, destroy=False):
    graph = ResourceGraph(document)
    entries = Differ(graph, registry).diff(store.snapshot(), destroy_all=destroy)
    return graph, Planner(graph).plan(entries)


def _execute(document, registry, settings, store=None, report=None, destroy=False, **kwargs):
    store = store or StateStore(settings.state_dir)
    graph, plan = _plan(document, registry, store, destroy=destroy)
    executor = Executor(graph, store, registry, settings, **kwargs)
    return executor.execute(plan, report), store


class TestExecuteSuccess:
    """Test successful runs."""

    def test_creates_in_order_and_persists(self, subnet_instance_doc, backend, fast_settings):
        report, store = _execute(subnet_instance_doc, ProviderRegistry(backend), fast_settings)

        assert report.success
        assert report.succeeded == [INSTANCE, SUBNET]
        assert backend.actions() == [('create', 'aws_subnet.s'), ('create', 'aws_instance.i')]

        subnet = store.get(SUBNET)
        instance = store.get(INSTANCE)
        assert subnet.resource_id == 'aws_subnet-1'
        assert instance.attributes['subnet_id'] == 'aws_subnet-1'
        assert instance.dependencies == [SUBNET]

    def test_backend_receives_resolved_attributes(self, subnet_instance_doc, backend, fast_settings):
        _execute(subnet_instance_doc, ProviderRegistry(backend), fast_settings)
        _, identity, attrs = backend.calls[1]
        assert identity == INSTANCE
        assert attrs == {'subnet_id': 'aws_subnet-1', 'instance_type': 't3.micro'}

    def test_second_run_is_noop(self, subnet_instance_doc, backend, fast_settings):
        registry = ProviderRegistry(backend)
        _, store = _execute(subnet_instance_doc, registry, fast_settings)
        _, plan = _plan(subnet_instance_doc, registry, store)
        assert plan.is_empty
        assert len(plan.noops) == 2

    def test_update_keeps_prior_id(self, subnet_instance_doc, backend, fast_settings):
        registry = ProviderRegistry(backend)
        _, store = _execute(subnet_instance_doc, registry, fast_settings)

        changed = make_document([
            {'type': 'aws_subnet', 'name': 's', 'attributes': {'cidr_block': '10.0.1.0/24'}},
            {'type': 'aws_instance', 'name': 'i', 'attributes': {
                'subnet_id': 'ref(aws_subnet, s, id)', 'instance_type': 't3.large'}},
        ], name='subnet-instance')
        registry.register('aws_instance', apply=lambda action, identity, attrs: ('', {}))
        report, _ = _execute(changed, registry, fast_settings, store=store)

        assert report.get(INSTANCE).actions == ['update']
        assert store.get(INSTANCE).resource_id == 'aws_instance-2'
        assert store.get(INSTANCE).attributes['instance_type'] == 't3.large'

    def test_noop_nodes_reported(self, subnet_instance_doc, backend, fast_settings):
        registry = ProviderRegistry(backend)
        _, store = _execute(subnet_instance_doc, registry, fast_settings)
        report, _ = _execute(subnet_instance_doc, registry, fast_settings, store=store)
        assert report.with_status(NodeStatus.NOOP) == [INSTANCE, SUBNET]
        assert report.success


class TestFailureIsolation:
    """Test that failures stay local to their dependents."""

    def test_consumer_failure_keeps_producer(self, subnet_instance_doc, backend, fast_settings):
        backend.fail(INSTANCE, ProviderError(ErrorKind.PERMANENT, 'quota exceeded'))
        report, store = _execute(subnet_instance_doc, ProviderRegistry(backend), fast_settings)

        assert not report.success
        assert report.get(SUBNET).status is NodeStatus.SUCCEEDED
        assert report.get(INSTANCE).status is NodeStatus.FAILED
        assert 'quota exceeded' in report.get(INSTANCE).error
        assert SUBNET in store
        assert INSTANCE not in store

    def test_dependents_of_failed_node_not_attempted(self, backend, fast_settings):
        doc = make_document([
            {'type': 'aws_subnet', 'name': 's', 'attributes': {'cidr_block': '10.0.1.0/24'}},
            {'type': 'aws_instance', 'name': 'i', 'attributes': {'subnet_id': 'ref(aws_subnet, s, id)'}},
            {'type': 'aws_lb_target_group_attachment', 'name': 'a', 'attributes': {
                'target_id': 'ref(aws_instance, i, id)'}},
            {'type': 'aws_route53_record', 'name': 'r', 'depends_on': ['aws_lb_target_group_attachment.a']},
        ])
        backend.fail(INSTANCE, ProviderError(ErrorKind.PERMANENT, 'quota exceeded'))
        report, _ = _execute(doc, ProviderRegistry(backend), fast_settings)

        assert report.blocked == [rid('aws_lb_target_group_attachment.a'), rid('aws_route53_record.r')]
        assert 'aws_lb_target_group_attachment.a' not in [i for _, i in backend.actions()]
        assert 'blocked' in report.get(rid('aws_route53_record.r')).error

    def test_producer_failure_blocks_consumer(self, subnet_instance_doc, backend, fast_settings):
        backend.fail(SUBNET, ProviderError(ErrorKind.PERMANENT, 'invalid cidr'))
        report, store = _execute(subnet_instance_doc, ProviderRegistry(backend), fast_settings)

        assert report.get(SUBNET).status is NodeStatus.FAILED
        instance = report.get(INSTANCE)
        assert instance.status is NodeStatus.FAILED
        assert instance.error.startswith('destroyed for replacement but not recreated')
        assert INSTANCE not in store
        assert 'aws_subnet.s' in report.get(INSTANCE).error
        assert backend.actions() == [('create', 'aws_subnet.s')]
        assert store.identities() == []

    def test_independent_sibling_continues(self, backend, fast_settings):
        doc = make_document([
            {'type': 'aws_vpc', 'name': 'a'},
            {'type': 'aws_vpc', 'name': 'b'},
            {'type': 'aws_subnet', 'name': 'under_a', 'attributes': {'vpc_id': 'ref(aws_vpc, a, id)'}},
            {'type': 'aws_subnet', 'name': 'under_b', 'attributes': {'vpc_id': 'ref(aws_vpc, b, id)'}},
        ])
        backend.fail(rid('aws_vpc.a'), ProviderError(ErrorKind.PERMANENT, 'denied'))
        report, _ = _execute(doc, ProviderRegistry(backend), fast_settings)

        assert report.failed == [rid('aws_vpc.a')]
        assert report.blocked == [rid('aws_subnet.under_a')]
        assert report.succeeded == [rid('aws_subnet.under_b'), rid('aws_vpc.b')]

    def test_unexpected_exception_fails_node(self, subnet_instance_doc, fast_settings):
        def broken(action, identity, attrs):
            raise RuntimeError('boom')

        registry = ProviderRegistry()
        registry.register('aws_subnet', apply=broken)
        report, _ = _execute(subnet_instance_doc, registry, fast_settings)
        assert report.get(SUBNET).status is NodeStatus.FAILED
        assert 'boom' in report.get(SUBNET).error
        assert report.get(INSTANCE).status is NodeStatus.BLOCKED

    def test_unregistered_type_without_backend_fails(self, subnet_instance_doc, fast_settings):
        report, _ = _execute(subnet_instance_doc, ProviderRegistry(), fast_settings)
        assert report.get(SUBNET).status is NodeStatus.FAILED
        assert 'no backend configured' in report.get(SUBNET).error


class TestRetry:
    """Test retry with exponential backoff."""

    def test_transient_then_success(self, subnet_instance_doc, backend, tmp_path):
        settings = EngineSettings(max_attempts=3, backoff_base=1.0, backoff_max=1.5,
                                  state_dir=tmp_path / 'state')
        delays = []
        backend.fail(SUBNET,
                     ProviderError(ErrorKind.RATE_LIMITED, 'slow down'),
                     ProviderError(ErrorKind.TRANSIENT, 'HTTP 503'))
        report, _ = _execute(subnet_instance_doc, ProviderRegistry(backend), settings,
                             sleep=delays.append)

        assert report.success
        assert report.get(SUBNET).attempts == 3
        assert delays == [1.0, 1.5]

    def test_retries_exhausted(self, subnet_instance_doc, backend, fast_settings):
        backend.fail(SUBNET, *[ProviderError(ErrorKind.CONFLICT, 'busy') for _ in range(3)])
        report, _ = _execute(subnet_instance_doc, ProviderRegistry(backend), fast_settings,
                             sleep=lambda _: None)

        result = report.get(SUBNET)
        assert result.status is NodeStatus.FAILED
        assert result.attempts == 3
        assert result.error == 'conflict: busy'

    def test_permanent_not_retried(self, subnet_instance_doc, backend, fast_settings):
        delays = []
        backend.fail(SUBNET, ProviderError(ErrorKind.PERMANENT, 'bad request'))
        report, _ = _execute(subnet_instance_doc, ProviderRegistry(backend), fast_settings,
                             sleep=delays.append)
        assert report.get(SUBNET).attempts == 1
        assert delays == []


class TestCancellation:
    """Test cooperative cancellation between batches."""

    def test_cancel_during_first_batch(self, subnet_instance_doc, backend, fast_settings):
        event = threading.Event()

        def apply_then_cancel(action, identity, attrs):
            result = backend.apply(action, identity, attrs)
            event.set()
            return result

        registry = ProviderRegistry(backend)
        registry.register('aws_subnet', apply=apply_then_cancel)
        report, store = _execute(subnet_instance_doc, registry, fast_settings, cancel_event=event)

        assert report.cancelled
        assert not report.success
        assert report.get(SUBNET).status is NodeStatus.SUCCEEDED
        assert report.get(INSTANCE).status is NodeStatus.SKIPPED
        assert SUBNET in store
        assert backend.actions() == [('create', 'aws_subnet.s')]

    def test_cancel_before_start(self, subnet_instance_doc, backend, fast_settings):
        registry = ProviderRegistry(backend)
        store = StateStore(fast_settings.state_dir)
        graph, plan = _plan(subnet_instance_doc, registry, store)
        executor = Executor(graph, store, registry, fast_settings)
        executor.cancel()
        report = executor.execute(plan)

        assert executor.cancelled
        assert report.skipped == [INSTANCE, SUBNET]
        assert backend.calls == []


class CorruptingStore(StateStore):
    """StateStore whose writes fail for one identity."""

    def __init__(self, root, broken):
        super().__init__(root)
        self.broken = broken

    def put(self, identity, state):
        if identity == self.broken:
            raise StoreCorrupt(str(self._path(identity)), 'disk full', identity)
        return super().put(identity, state)


class TestFatalStoreErrors:
    """Test that State Store failures stop the run."""

    def test_store_failure_is_fatal(self, subnet_instance_doc, backend, fast_settings):
        store = CorruptingStore(fast_settings.state_dir, SUBNET)
        report = RunReport(subnet_instance_doc.name)
        with pytest.raises(StoreCorrupt, match='disk full'):
            _execute(subnet_instance_doc, ProviderRegistry(backend), fast_settings,
                     store=store, report=report)

        assert report.get(SUBNET).status is NodeStatus.FAILED
        assert report.get(INSTANCE).status is NodeStatus.SKIPPED
        assert backend.actions() == [('create', 'aws_subnet.s')]

    def test_state_write_failure_is_fatal(self, subnet_instance_doc, backend, fast_settings, monkeypatch):
        real_replace = os.replace

        def _replace(src, dst):
            if Path(dst).parent.name == 'aws_subnet':
                raise OSError(28, 'No space left on device')
            return real_replace(src, dst)

        monkeypatch.setattr('reconciler.state.os.replace', _replace)
        report = RunReport(subnet_instance_doc.name)
        with pytest.raises(StoreWriteError, match='not recorded'):
            _execute(subnet_instance_doc, ProviderRegistry(backend), fast_settings, report=report)

        assert report.get(SUBNET).status is NodeStatus.FAILED
        assert 'No space left on device' in report.get(SUBNET).error
        assert report.get(INSTANCE).status is NodeStatus.SKIPPED
        assert backend.actions() == [('create', 'aws_subnet.s')]


class TestReplacement:
    """Test destroy-then-create replacement."""

    def _changed_doc(self):
        return make_document([
            {'type': 'aws_subnet', 'name': 's', 'attributes': {'cidr_block': '10.0.9.0/24'}},
            {'type': 'aws_instance', 'name': 'i', 'attributes': {
                'subnet_id': 'ref(aws_subnet, s, id)', 'instance_type': 't3.micro'}},
        ], name='subnet-instance')

    def test_replacement_succeeds(self, subnet_instance_doc, backend, fast_settings):
        registry = ProviderRegistry(backend)
        registry.register('aws_subnet', replace_on={'cidr_block'})
        _, store = _execute(subnet_instance_doc, registry, fast_settings)

        report, _ = _execute(self._changed_doc(), registry, fast_settings, store=store)
        assert report.success
        assert report.get(SUBNET).actions == ['destroy', 'create']
        assert report.get(INSTANCE).actions == ['destroy', 'create']
        assert store.get(SUBNET).resource_id == 'aws_subnet-3'
        assert store.get(INSTANCE).attributes['subnet_id'] == 'aws_subnet-3'

    def test_failed_recreate_is_failure(self, subnet_instance_doc, backend, fast_settings):
        refuse_create = {'on': False}

        def subnet_apply(action, identity, attrs):
            if refuse_create['on'] and action is Action.CREATE:
                raise ProviderError(ErrorKind.PERMANENT, 'cidr overlaps', identity)
            return backend.apply(action, identity, attrs)

        registry = ProviderRegistry(backend)
        registry.register('aws_subnet', apply=subnet_apply, replace_on={'cidr_block'})
        _, store = _execute(subnet_instance_doc, registry, fast_settings)

        refuse_create['on'] = True
        report, _ = _execute(self._changed_doc(), registry, fast_settings, store=store)

        result = report.get(SUBNET)
        assert result.status is NodeStatus.FAILED
        assert result.error.startswith('destroyed for replacement but not recreated')
        assert 'cidr overlaps' in result.error
        assert SUBNET not in store
        instance = report.get(INSTANCE)
        assert instance.status is NodeStatus.FAILED
        assert instance.error.startswith('destroyed for replacement but not recreated')
        assert INSTANCE not in store


class TestTeardown:
    """Test destroy runs."""

    def test_destroy_dependents_first(self, subnet_instance_doc, backend, fast_settings):
        registry = ProviderRegistry(backend)
        _, store = _execute(subnet_instance_doc, registry, fast_settings)
        backend.calls.clear()

        report, _ = _execute(subnet_instance_doc, registry, fast_settings, store=store, destroy=True)
        assert report.success
        assert backend.actions() == [('destroy', 'aws_instance.i'), ('destroy', 'aws_subnet.s')]
        assert store.identities() == []

    def test_destroy_passes_stored_attributes(self, subnet_instance_doc, backend, fast_settings):
        registry = ProviderRegistry(backend)
        _, store = _execute(subnet_instance_doc, registry, fast_settings)
        backend.calls.clear()

        _execute(subnet_instance_doc, registry, fast_settings, store=store, destroy=True)
        _, identity, attrs = backend.calls[-1]
        assert identity == SUBNET
        assert attrs['cidr_block'] == '10.0.1.0/24'
