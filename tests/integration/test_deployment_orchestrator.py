"""
End-to-end apply cycles through the orchestrator with the in-memory runtime.
"""
import pytest

from tierup.DRIVERS.memory_driver import MemoryDriver
from tierup.errors import CyclicDependency
from tierup.MANAGERS.deployment_orchestrator import DeploymentOrchestrator
from tierup.MODELS.orchestration_config import ReconcilerConfig
from tierup.MODELS.service_spec import ServiceSpec
from tierup.MODELS.state import Action, ServiceStatus
from tierup.MODELS.topology import Topology
from tierup.PARSERS.topology_loader import TopologyLoader
from tierup.REPORTING.status_reporter import EventKind, StatusReporter
from tierup.STATE.state_store import JsonStateStore, MemoryStateStore

TOPOLOGY = """
services:
  - id: db
    image: postgres:16
    env:
      POSTGRES_PASSWORD: secret
  - id: api
    image: acme/api:${API_VERSION}
    depends_on: [db]
    ports:
      - internal: 3000
        external: 8080
  - id: frontend
    image: acme/web:1.0
    depends_on: [api]
"""


def load(api_version="1.0"):
    return TopologyLoader({"API_VERSION": api_version}).load_string(TOPOLOGY)


def orchestrator(driver, store, **config):
    config.setdefault("backoff_initial", 0.0)
    return DeploymentOrchestrator(driver, store, ReconcilerConfig(**config), sleep=lambda seconds: None)


@pytest.fixture
def driver():
    return MemoryDriver()


@pytest.fixture
def store(tmp_path):
    return JsonStateStore(str(tmp_path / ".tierup" / "state.json"))


def test_first_apply_converges_and_saves(driver, store):
    record = orchestrator(driver, store).apply(load())

    assert record.converged
    assert driver.calls_for("start") == ["db", "api", "frontend"]
    assert store.load() == record


def test_second_apply_is_a_no_op(driver, store):
    orchestrator(driver, store).apply(load())
    driver.reset_calls()

    reporter = StatusReporter()
    record = orchestrator(driver, store).apply(load(), reporter=reporter)

    assert record.converged
    assert driver.calls_for("start") == []
    assert driver.calls_for("stop") == []
    assert {o.action for o in record.outcomes.values()} == {Action.NOOP}
    assert [e.kind for e in reporter].count(EventKind.SERVICE_UNCHANGED) == 3


def test_changed_image_touches_one_service(driver, store):
    first = orchestrator(driver, store).apply(load())
    driver.reset_calls()

    second = orchestrator(driver, store).apply(load(api_version="1.1"))

    assert driver.calls_for("start") == ["api"]
    assert driver.calls_for("stop") == ["api"]
    assert second.outcomes["api"].action == Action.UPDATE
    assert second.outcomes["db"].handle == first.outcomes["db"].handle
    assert second.topology_hash != first.topology_hash


def test_drift_is_repaired(driver, store):
    orchestrator(driver, store).apply(load())
    driver.kill("db")
    driver.reset_calls()

    record = orchestrator(driver, store).apply(load())

    assert record.converged
    assert record.outcomes["db"].action == Action.RECREATE
    assert driver.calls_for("start") == ["db"]


def test_dry_run_changes_nothing(driver):
    store = MemoryStateStore()
    orchestrator(driver, store).apply(load())
    driver.reset_calls()

    record = orchestrator(driver, store).apply(load(api_version="2.0"), dry_run=True)

    assert driver.calls == []
    assert store.saves == 1
    assert record.outcomes["api"].status == ServiceStatus.PLANNED
    assert record.outcomes["api"].action == Action.UPDATE


def test_corrupted_state_forces_full_apply(driver, store):
    orchestrator(driver, store).apply(load())
    with open(store.path, "w") as f:
        f.write("{not json")
    driver.reset_calls()

    record = orchestrator(driver, store).apply(load())

    assert record.converged
    assert {o.action for o in record.outcomes.values()} == {Action.CREATE}
    assert sorted(driver.calls_for("start")) == ["api", "db", "frontend"]


def test_failed_service_is_retried_next_apply(store):
    driver = MemoryDriver(permanent_failures={"api"})
    first = orchestrator(driver, store).apply(load())
    assert first.failed_services == ["api", "frontend"]

    driver.permanent_failures.clear()
    driver.reset_calls()
    second = orchestrator(driver, store).apply(load())

    assert second.converged
    assert driver.calls_for("start") == ["api", "frontend"]
    assert second.outcomes["db"].action == Action.NOOP


def test_cycle_is_rejected_before_any_change(driver):
    store = MemoryStateStore()
    topology = Topology(services={
        "a": ServiceSpec(id="a", image="busybox", depends_on=("b",)),
        "b": ServiceSpec(id="b", image="busybox", depends_on=("a",)),
    })
    reporter = StatusReporter()

    with pytest.raises(CyclicDependency):
        orchestrator(driver, store).apply(topology, reporter=reporter)

    assert driver.calls == []
    assert store.saves == 0
    assert reporter.closed


def test_cancel_before_apply(driver):
    store = MemoryStateStore()
    manager = orchestrator(driver, store)
    manager.cancel()

    record = manager.apply(load())

    assert driver.calls == []
    assert {o.status for o in record.outcomes.values()} == {ServiceStatus.CANCELLED}
    assert not record.converged


def test_removed_service_is_pruned(driver, store):
    orchestrator(driver, store).apply(load())
    driver.reset_calls()
    smaller = Topology(services={"db": load()["db"]})

    record = orchestrator(driver, store).apply(smaller)

    assert sorted(driver.calls_for("stop")) == ["api", "frontend"]
    assert list(record.outcomes) == ["db"]


def test_status_reports_drift(driver, store):
    manager = orchestrator(driver, store)
    manager.apply(load())
    driver.kill("api")

    status = manager.status()

    assert status["db"].running
    assert not status["api"].running


def test_down_stops_in_reverse_order(driver, store):
    manager = orchestrator(driver, store)
    manager.apply(load())
    driver.reset_calls()

    record = manager.down()

    assert driver.calls_for("stop") == ["frontend", "api", "db"]
    assert record.outcomes == {}
    assert manager.status() == {}


def test_down_without_state(driver, store):
    record = orchestrator(driver, store).down()
    assert record.outcomes == {}
    assert driver.calls == []


def test_cancel_applies_to_one_cycle_only(driver):
    store = MemoryStateStore()
    manager = orchestrator(driver, store)
    manager.cancel()

    cancelled = manager.apply(load())
    resumed = manager.apply(load())

    assert {o.status for o in cancelled.outcomes.values()} == {ServiceStatus.CANCELLED}
    assert resumed.converged
    assert driver.calls_for("start") == ["db", "api", "frontend"]


def test_driver_bug_still_saves_the_record(store):
    class BrokenDriver(MemoryDriver):
        def start(self, spec):
            if spec.id == "api":
                raise RuntimeError("adapter bug")
            return super().start(spec)

    driver = BrokenDriver()
    record = orchestrator(driver, store).apply(load())

    assert record.failed_services == ["api", "frontend"]
    saved = store.load()
    assert saved.outcomes["db"].status == ServiceStatus.RUNNING
    assert saved.outcomes["db"].handle is not None
