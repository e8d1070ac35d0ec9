# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Reconciliation of observed runtime state against the desired topology.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..DRIVERS.runtime_driver import RuntimeDriver
from ..errors import DriverError, TransientDriverError
from ..MODELS.orchestration_config import FailurePolicy, ReconcilerConfig
from ..MODELS.service_spec import ServiceSpec
from ..MODELS.state import (
    Action,
    Handle,
    ApplyRecord,
    ObservedState,
    ServiceOutcome,
    ServiceStatus,
)
from ..MODELS.topology import ExecutionPlan, Topology
from ..REPORTING.status_reporter import EventKind, StatusReporter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Reconciler:
    """
    Drives a runtime driver until every service of a plan is running the
    desired spec, batch by batch.

    Services of one batch are reconciled concurrently; a batch starts only
    once every service of the previous batch is running or has failed for
    good. Each task writes only its own service's observed state.
    """

    def __init__(self,
                 config: Optional[ReconcilerConfig] = None,
                 reporter: Optional[StatusReporter] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initializes the reconciler.

        :param config: Retry, backoff, parallelism and failure policy.
        :param reporter: Receives progress events.
        :param sleep: Used between retries.
        """
        self.config = config or ReconcilerConfig()
        self.reporter = reporter or StatusReporter()
        self._sleep = sleep
        self._cancelled = threading.Event()
        self._observed: Dict[str, ObservedState] = {}

    def cancel(self) -> None:
        """Requests cancellation; takes effect before the next batch starts."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def observed(self) -> Dict[str, ObservedState]:
        return dict(self._observed)

    def decide(self, spec: ServiceSpec, previous: Optional[ObservedState]) -> Action:
        """
        Chooses what to do with a service given what was last observed.
        """
        if previous is None or previous.handle is None:
            return Action.CREATE
        if previous.spec_hash is None:
            return Action.RECREATE
        if previous.spec_hash != spec.spec_hash:
            return Action.UPDATE
        if previous.convergent:
            return Action.NOOP
        return Action.RECREATE

    def apply(self,
              plan: ExecutionPlan,
              observed: Dict[str, ObservedState],
              driver: RuntimeDriver) -> ApplyRecord:
        """
        Reconciles every service of the plan and returns the cycle's record.

        :param plan: Batches to execute in order.
        :param observed: Last known state per service; services absent from the
            plan are pruned when the cycle completes.
        :param driver: Runtime the services run on.
        :return: The apply record for this cycle.
        """
        topology = plan.topology
        self._observed = dict(observed)
        outcomes: Dict[str, ServiceOutcome] = {}
        halted: Optional[str] = None

        self.reporter.emit(
            EventKind.CYCLE_STARTED,
            message=f"{len(topology)} services in {len(plan)} batches",
        )

        for index, batch in enumerate(plan.batches):
            if halted is None and self._cancelled.is_set():
                halted = "cancelled"
                self.reporter.emit(EventKind.CYCLE_CANCELLED, batch=index)

            if halted:
                for service_id in batch:
                    outcomes[service_id] = self._carried_outcome(topology[service_id], ServiceStatus.CANCELLED)
                    self.reporter.emit(EventKind.SERVICE_CANCELLED, service=service_id, batch=index, message=halted)
                continue

            self.reporter.emit(EventKind.BATCH_STARTED, batch=index, message=", ".join(batch))

            runnable: List[ServiceSpec] = []
            for service_id in batch:
                spec = topology[service_id]
                blocked = [d for d in spec.depends_on if outcomes[d].status != ServiceStatus.RUNNING]
                if blocked:
                    outcome = self._carried_outcome(spec, ServiceStatus.FAILED)
                    outcome.error = f"dependency {', '.join(blocked)} did not converge"
                    outcomes[service_id] = outcome
                    self.reporter.emit(EventKind.SERVICE_FAILED, service=service_id, batch=index, message=outcome.error)
                else:
                    runnable.append(spec)

            outcomes.update(self._run_batch(runnable, driver, index))
            self.reporter.emit(EventKind.BATCH_COMPLETE, batch=index)

            if (self.config.failure_policy == FailurePolicy.ABORT
                    and any(outcomes[s].status == ServiceStatus.FAILED for s in batch)):
                halted = "aborted"
                self.reporter.emit(EventKind.CYCLE_ABORTED, batch=index, message="a service failed")

        stale = sorted(s for s in self._observed if s not in topology)
        if halted:
            for service_id in stale:
                outcomes[service_id] = self._stale_outcome(service_id, ServiceStatus.CANCELLED)
        elif self.config.prune:
            outcomes.update(self._prune(stale, driver))

        record = ApplyRecord(topology_hash=topology.topology_hash, outcomes=outcomes)
        if record.converged:
            summary = "converged"
        else:
            unconverged = sorted(n for n, o in outcomes.items() if o.status != ServiceStatus.RUNNING)
            summary = f"not converged: {', '.join(unconverged)}"
        self.reporter.emit(EventKind.CYCLE_COMPLETE, message=summary)
        return record

    def preview(self, plan: ExecutionPlan, observed: Dict[str, ObservedState]) -> ApplyRecord:
        """
        Reports the action each service would take without touching the runtime.
        """
        topology = plan.topology
        outcomes: Dict[str, ServiceOutcome] = {}
        self.reporter.emit(EventKind.CYCLE_STARTED, message=f"dry run of {len(plan)} batches")
        for index, batch in enumerate(plan.batches):
            for service_id in batch:
                spec = topology[service_id]
                previous = observed.get(service_id)
                action = self.decide(spec, previous)
                outcomes[service_id] = ServiceOutcome(
                    status=ServiceStatus.PLANNED,
                    action=action,
                    spec_hash=spec.spec_hash,
                    handle=previous.handle if previous else None,
                    depends_on=spec.depends_on,
                )
                self.reporter.emit(EventKind.SERVICE_PLANNED, service=service_id, batch=index, message=action.value)
        for service_id in sorted(s for s in observed if s not in topology):
            self.reporter.emit(EventKind.SERVICE_PLANNED, service=service_id, message="remove")
        self.reporter.emit(EventKind.CYCLE_COMPLETE, message="dry run")
        return ApplyRecord(topology_hash=topology.topology_hash, outcomes=outcomes)

    def refresh(self, observed: Dict[str, ObservedState], driver: RuntimeDriver) -> Dict[str, ObservedState]:
        """
        Re-inspects every recorded handle so drift is noticed before planning.
        A handle that cannot be inspected is treated as not running.
        """
        refreshed = {}
        for service_id, state in observed.items():
            if state.handle is None:
                refreshed[service_id] = state
                continue
            try:
                current = self._retry(service_id, driver.inspect, state.handle)
            except DriverError as e:
                logger.warning("Cannot inspect %s: %s", service_id, e)
                refreshed[service_id] = state.model_copy(update={"running": False, "last_error": str(e)})
                continue
            refreshed[service_id] = current.model_copy(
                update={"spec_hash": state.spec_hash, "handle": state.handle}
            )
            if state.convergent and not current.convergent:
                logger.info("Drift detected for %s: %s", service_id, current.last_error or current.health.value)
        return refreshed

    def teardown(self,
                 batches: List[List[str]],
                 observed: Dict[str, ObservedState],
                 driver: RuntimeDriver) -> ApplyRecord:
        """
        Stops services batch by batch; batches must already be in teardown order.
        Services that fail to stop stay in the returned record.
        """
        self._observed = dict(observed)
        self.reporter.emit(EventKind.CYCLE_STARTED, message=f"teardown of {len(self._observed)} services")
        outcomes: Dict[str, ServiceOutcome] = {}
        for index, batch in enumerate(batches):
            self.reporter.emit(EventKind.BATCH_STARTED, batch=index, message=", ".join(batch))
            outcomes.update(self._prune(batch, driver))
            self.reporter.emit(EventKind.BATCH_COMPLETE, batch=index)
        record = ApplyRecord(topology_hash=Topology().topology_hash, outcomes=outcomes)
        self.reporter.emit(EventKind.CYCLE_COMPLETE, message="removed" if not outcomes else "teardown incomplete")
        return record

    def _run_batch(self, specs: List[ServiceSpec], driver: RuntimeDriver, index: int) -> Dict[str, ServiceOutcome]:
        if not specs:
            return {}
        workers = min(self.config.max_parallel, len(specs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tierup-batch") as pool:
            futures = {
                pool.submit(self._reconcile_service, spec, driver, index): spec.id
                for spec in specs
            }
            return {futures[future]: future.result() for future in as_completed(futures)}

    def _reconcile_service(self, spec: ServiceSpec, driver: RuntimeDriver, index: int) -> ServiceOutcome:
        previous = self._observed.get(spec.id)
        action = self.decide(spec, previous)

        if action == Action.NOOP:
            self.reporter.emit(EventKind.SERVICE_UNCHANGED, service=spec.id, batch=index)
            return ServiceOutcome(
                status=ServiceStatus.RUNNING,
                action=action,
                spec_hash=spec.spec_hash,
                handle=previous.handle,
                running=True,
                health=previous.health,
                depends_on=spec.depends_on,
            )

        self.reporter.emit(EventKind.SERVICE_STARTING, service=spec.id, batch=index, message=action.value)
        handle = previous.handle if previous else None
        attempts = 0

        def start_and_verify() -> ObservedState:
            nonlocal attempts, handle
            attempts += 1
            handle = driver.start(spec)
            state = driver.inspect(handle)
            if not state.running:
                raise TransientDriverError(
                    f"{spec.id} is not running after start ({state.last_error or 'no detail'})"
                )
            if not state.convergent:
                raise TransientDriverError(f"{spec.id} is {state.health.value}")
            return state

        try:
            if handle is not None:
                self._retry(spec.id, driver.stop, handle)
                handle = None
                self._observed[spec.id] = ObservedState(running=False)
            state = self._retry(spec.id, start_and_verify)
        except DriverError as e:
            logger.error("Service %s failed after %d attempt(s): %s", spec.id, attempts, e)
            return self._failed_outcome(spec, action, handle, attempts, str(e), index)
        except Exception as e:
            # a driver bug fails this service, not the whole cycle
            logger.exception("Unexpected error reconciling %s", spec.id)
            return self._failed_outcome(spec, action, handle, attempts, f"{type(e).__name__}: {e}", index)

        state = state.model_copy(update={"spec_hash": spec.spec_hash, "handle": handle})
        self._observed[spec.id] = state
        self.reporter.emit(EventKind.SERVICE_STARTED, service=spec.id, batch=index, message=f"{action.value} {handle}")
        return ServiceOutcome(
            status=ServiceStatus.RUNNING,
            action=action,
            spec_hash=spec.spec_hash,
            handle=handle,
            running=True,
            health=state.health,
            attempts=attempts,
            depends_on=spec.depends_on,
        )

    def _failed_outcome(self, spec: ServiceSpec, action: Action, handle: Optional[Handle],
                        attempts: int, error: str, index: int) -> ServiceOutcome:
        self._observed[spec.id] = ObservedState(running=False, handle=handle, last_error=error)
        self.reporter.emit(EventKind.SERVICE_FAILED, service=spec.id, batch=index, message=error)
        return ServiceOutcome(
            status=ServiceStatus.FAILED,
            action=action,
            handle=handle,
            attempts=attempts,
            error=error,
            depends_on=spec.depends_on,
        )

    def _prune(self, service_ids: List[str], driver: RuntimeDriver) -> Dict[str, ServiceOutcome]:
        """
        Stops the given services; returns outcomes only for those that could not be stopped.
        """
        failures: Dict[str, ServiceOutcome] = {}
        for service_id in service_ids:
            state = self._observed.get(service_id)
            if state is None or state.handle is None:
                self._observed.pop(service_id, None)
                continue
            try:
                self._retry(service_id, driver.stop, state.handle)
            except Exception as e:
                if not isinstance(e, DriverError):
                    logger.exception("Unexpected error removing %s", service_id)
                failures[service_id] = self._stale_outcome(service_id, ServiceStatus.FAILED)
                failures[service_id].error = f"could not remove: {e}"
                self.reporter.emit(EventKind.SERVICE_FAILED, service=service_id, message=failures[service_id].error)
                continue
            self._observed.pop(service_id)
            self.reporter.emit(EventKind.SERVICE_REMOVED, service=service_id)
        return failures

    def _carried_outcome(self, spec: ServiceSpec, status: ServiceStatus) -> ServiceOutcome:
        """
        Outcome for a service that was not touched this cycle. Its previous
        handle is kept; its desired hash is kept only if it was cancelled.
        """
        previous = self._observed.get(spec.id) or ObservedState()
        return ServiceOutcome(
            status=status,
            action=Action.NONE,
            spec_hash=previous.spec_hash if status == ServiceStatus.CANCELLED else None,
            handle=previous.handle,
            running=previous.running,
            health=previous.health,
            error=previous.last_error if status == ServiceStatus.CANCELLED else None,
            depends_on=spec.depends_on,
        )

    def _stale_outcome(self, service_id: str, status: ServiceStatus) -> ServiceOutcome:
        previous = self._observed.get(service_id) or ObservedState()
        return ServiceOutcome(
            status=status,
            handle=previous.handle,
            running=previous.running,
            health=previous.health,
        )

    def _retry(self, service_id: str, fn: Callable[..., T], *args) -> T:
        """
        Calls ``fn`` retrying TransientDriverError with exponential backoff;
        the last error is re-raised once attempts run out.
        """
        def before_sleep(retry_state) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning("%s: attempt %d failed (%s), retrying in %.1fs",
                           service_id, retry_state.attempt_number, error, delay)
            self.reporter.emit(
                EventKind.SERVICE_RETRYING,
                service=service_id,
                message=f"attempt {retry_state.attempt_number} failed: {error}",
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.backoff_initial, max=self.config.backoff_max),
            retry=retry_if_exception_type(TransientDriverError),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(fn, *args)
