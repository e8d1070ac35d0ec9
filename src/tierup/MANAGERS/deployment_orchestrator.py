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
Orchestration of a full apply cycle: state load, planning, reconciliation and state save.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional

from ..DRIVERS.runtime_driver import RuntimeDriver
from ..MODELS.orchestration_config import ReconcilerConfig
from ..MODELS.state import ApplyRecord, ObservedState
from ..MODELS.topology import ExecutionPlan, Topology
from ..REPORTING.status_reporter import StatusReporter
from ..RUNNERS.dependency_planner import DependencyPlanner
from ..RUNNERS.reconciler import Reconciler
from ..STATE.state_store import StateStore

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    Brings a topology to its desired state on one runtime and remembers
    what was applied, so the next apply only touches what changed.
    """
    def __init__(self,
                 driver: RuntimeDriver,
                 store: StateStore,
                 config: Optional[ReconcilerConfig] = None,
                 refresh: bool = True,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initializes the orchestrator.

        :param driver: Runtime the services run on.
        :param store: Where the apply record is kept between invocations.
        :param config: Reconciler settings.
        :param refresh: Inspect recorded services before reconciling to detect drift.
        :param sleep: Used between retries.
        """
        self.driver = driver
        self.store = store
        self.config = config or ReconcilerConfig()
        self.refresh = refresh
        self.planner = DependencyPlanner()
        self._sleep = sleep
        self._cancel_requested = threading.Event()
        self._reconciler: Optional[Reconciler] = None

    def plan(self, topology: Topology) -> ExecutionPlan:
        return self.planner.plan(topology)

    def apply(self,
              topology: Topology,
              reporter: Optional[StatusReporter] = None,
              dry_run: bool = False) -> ApplyRecord:
        """
        Runs one apply cycle. The state store is written once, after every
        batch has resolved, and never on a dry run.

        :param topology: Desired services.
        :param reporter: Receives progress events; closed when the cycle ends.
        :param dry_run: Only report what would change.
        :return: The apply record of this cycle.
        :raises CyclicDependency: Before anything is executed.
        """
        reporter = reporter or StatusReporter()
        try:
            plan = self.planner.plan(topology)
            previous = self.store.load()
            observed = previous.observed_states() if previous else {}

            reconciler = self._new_reconciler(reporter)
            if dry_run:
                return reconciler.preview(plan, observed)

            if self.refresh and observed:
                observed = reconciler.refresh(observed, self.driver)

            record = reconciler.apply(plan, observed, self.driver)
            self.store.save(record)
            logger.info("Apply finished: %s", "converged" if record.converged else "not converged")
            return record
        finally:
            self._end_cycle()
            reporter.close()

    def status(self) -> Dict[str, ObservedState]:
        """
        Inspects every service in the last apply record.
        """
        previous = self.store.load()
        if previous is None:
            return {}
        reconciler = self._new_reconciler(StatusReporter())
        return reconciler.refresh(previous.observed_states(), self.driver)

    def down(self, reporter: Optional[StatusReporter] = None) -> ApplyRecord:
        """
        Stops all recorded services in reverse dependency order.
        Services that could not be stopped remain recorded.
        """
        reporter = reporter or StatusReporter()
        try:
            previous = self.store.load()
            if previous is None:
                return ApplyRecord(topology_hash=Topology().topology_hash)
            batches = self.planner.teardown_order(previous.dependencies())
            reconciler = self._new_reconciler(reporter)
            record = reconciler.teardown(batches, previous.observed_states(), self.driver)
            self.store.save(record)
            return record
        finally:
            self._end_cycle()
            reporter.close()

    def cancel(self) -> None:
        """
        Stops the current cycle before its next batch, or the next cycle if
        none is running. Services already started are left running.
        """
        self._cancel_requested.set()
        if self._reconciler is not None:
            self._reconciler.cancel()

    def _end_cycle(self) -> None:
        # a cancel request applies to one cycle only
        self._cancel_requested.clear()
        self._reconciler = None

    def _new_reconciler(self, reporter: StatusReporter) -> Reconciler:
        reconciler = Reconciler(self.config, reporter, sleep=self._sleep)
        self._reconciler = reconciler
        if self._cancel_requested.is_set():
            reconciler.cancel()
        return reconciler
