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
Models for observed runtime state and the per-cycle apply record.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


class ServiceStatus(str, Enum):
    """Terminal status of a service at the end of an apply cycle."""

    RUNNING = "running"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PLANNED = "planned"  # dry-run only


class Action(str, Enum):
    """What the reconciler did (or would do) to a service."""

    NOOP = "noop"
    CREATE = "create"
    UPDATE = "update"
    RECREATE = "recreate"
    NONE = "none"  # not attempted


class Handle(BaseModel):
    """Opaque runtime reference to a started service."""

    driver: str
    ref: str

    def __str__(self) -> str:
        return f"{self.driver}:{self.ref}"


class ObservedState(BaseModel):
    """What is known about a service's runtime state."""

    running: bool = False
    handle: Optional[Handle] = None
    health: HealthStatus = HealthStatus.NONE
    last_error: Optional[str] = None
    spec_hash: Optional[str] = None

    @property
    def convergent(self) -> bool:
        return self.running and self.health in (HealthStatus.HEALTHY, HealthStatus.NONE)


class ServiceOutcome(BaseModel):
    """Result of reconciling one service in one apply cycle."""

    status: ServiceStatus
    action: Action = Action.NONE
    spec_hash: Optional[str] = None
    handle: Optional[Handle] = None
    running: bool = False
    health: HealthStatus = HealthStatus.NONE
    attempts: int = 0
    error: Optional[str] = None
    depends_on: Tuple[str, ...] = ()

    def observed(self) -> ObservedState:
        return ObservedState(
            running=self.running,
            handle=self.handle,
            health=self.health,
            last_error=self.error,
            spec_hash=self.spec_hash,
        )


class ApplyRecord(BaseModel):
    """
    Persisted summary of an apply cycle. Read at the start of the next cycle
    to decide which services are already convergent.
    """

    topology_hash: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    outcomes: Dict[str, ServiceOutcome] = {}

    @property
    def converged(self) -> bool:
        return all(o.status == ServiceStatus.RUNNING for o in self.outcomes.values())

    @property
    def failed_services(self) -> List[str]:
        return sorted(name for name, o in self.outcomes.items() if o.status == ServiceStatus.FAILED)

    def observed_states(self) -> Dict[str, ObservedState]:
        return {name: outcome.observed() for name, outcome in self.outcomes.items()}

    def dependencies(self) -> Dict[str, List[str]]:
        """Recorded dependency edges, restricted to services present in the record."""
        return {
            name: [d for d in outcome.depends_on if d in self.outcomes]
            for name, outcome in self.outcomes.items()
        }
