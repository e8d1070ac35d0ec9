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
In-process runtime driver that simulates containers.

Used for dry demos (``--driver memory``) and for exercising the reconciler
with latency, scripted transient failures and drift.
"""
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import DriverError, TransientDriverError
from ..MODELS.service_spec import ServiceSpec
from ..MODELS.state import Handle, HealthStatus, ObservedState
from .runtime_driver import RuntimeDriver


@dataclass
class SimulatedContainer:
    service_id: str
    spec_hash: str
    running: bool = True
    health: HealthStatus = HealthStatus.NONE


class MemoryDriver(RuntimeDriver):
    """
    Keeps simulated containers in a dictionary and records every call.
    """

    name = "memory"

    def __init__(self,
                 latency: float = 0.0,
                 transient_failures: Optional[Dict[str, int]] = None,
                 permanent_failures: Iterable[str] = (),
                 crash_on_start: Iterable[str] = ()):
        """
        Initializes the simulation.

        :param latency: Seconds each call sleeps before acting.
        :param transient_failures: Service id -> number of ``start`` calls that raise
            TransientDriverError before one succeeds.
        :param permanent_failures: Service ids whose ``start`` always raises DriverError.
        :param crash_on_start: Service ids whose containers exit right after starting.
        """
        self.latency = latency
        self.transient_failures = dict(transient_failures or {})
        self.permanent_failures = set(permanent_failures)
        self.crash_on_start = set(crash_on_start)
        self.containers: Dict[str, SimulatedContainer] = {}
        self.calls: List[Tuple[str, str]] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def start(self, spec: ServiceSpec) -> Handle:
        self._record("start", spec.id)
        with self._lock:
            if self.transient_failures.get(spec.id, 0) > 0:
                self.transient_failures[spec.id] -= 1
                raise TransientDriverError(f"{spec.id}: runtime temporarily unavailable")
            if spec.id in self.permanent_failures:
                raise DriverError(f"{spec.id}: image {spec.image} not found")

            for ref, container in self.containers.items():
                if (container.service_id == spec.id and container.running
                        and container.spec_hash == spec.spec_hash):
                    return self._handle(ref)

            ref = f"{spec.id}-{next(self._ids)}"
            self.containers[ref] = SimulatedContainer(
                service_id=spec.id,
                spec_hash=spec.spec_hash,
                running=spec.id not in self.crash_on_start,
            )
            return self._handle(ref)

    def stop(self, handle: Handle) -> None:
        with self._lock:
            container = self.containers.pop(handle.ref, None)
        self._record("stop", container.service_id if container else handle.ref)

    def inspect(self, handle: Handle) -> ObservedState:
        with self._lock:
            container = self.containers.get(handle.ref)
        self._record("inspect", container.service_id if container else handle.ref)
        if container is None:
            return ObservedState(running=False, handle=handle, last_error="container not found")
        return ObservedState(
            running=container.running,
            handle=handle,
            health=container.health,
            last_error=None if container.running else "exited(1)",
        )

    def kill(self, service_id: str) -> None:
        """Simulates a container dying outside of tierup's control."""
        with self._lock:
            for container in self.containers.values():
                if container.service_id == service_id:
                    container.running = False

    def calls_for(self, operation: str) -> List[str]:
        with self._lock:
            return [service for op, service in self.calls if op == operation]

    def reset_calls(self) -> None:
        with self._lock:
            self.calls.clear()

    def _record(self, operation: str, service_id: str) -> None:
        if self.latency:
            time.sleep(self.latency)
        with self._lock:
            self.calls.append((operation, service_id))
