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
The declared topology of one apply cycle, and the execution plan derived from it.
"""
from typing import Dict, Iterator, List

from pydantic import BaseModel, model_validator

from ..errors import CyclicDependency, MalformedSpec, UnknownDependency
from ..UTILS.hashing import content_hash
from .service_spec import ServiceSpec


class Topology(BaseModel):
    """
    Mapping from service identifier to its spec.
    Equivalent to a validated tierup.yml document.
    """
    services: Dict[str, ServiceSpec] = {}

    @model_validator(mode="after")
    def _check_edges(self) -> "Topology":
        for key, spec in self.services.items():
            if key != spec.id:
                raise MalformedSpec(f"Service registered as {key!r} declares id {spec.id!r}", [key, spec.id])
            for dependency in spec.depends_on:
                if dependency == spec.id:
                    raise CyclicDependency([spec.id])
                if dependency not in self.services:
                    raise UnknownDependency(spec.id, dependency)
        return self

    def __getitem__(self, service_id: str) -> ServiceSpec:
        return self.services[service_id]

    def __contains__(self, service_id: object) -> bool:
        return service_id in self.services

    def __iter__(self) -> Iterator[str]:  # type: ignore[override]
        return iter(self.services)

    def __len__(self) -> int:
        return len(self.services)

    def dependencies(self) -> Dict[str, List[str]]:
        """Dependency edges as a plain mapping of service -> services it depends on."""
        return {name: list(spec.depends_on) for name, spec in self.services.items()}

    @property
    def topology_hash(self) -> str:
        return content_hash({
            name: [spec.spec_hash, list(spec.depends_on)]
            for name, spec in self.services.items()
        })


class ExecutionPlan(BaseModel):
    """
    Ordered batches of service identifiers. Services inside a batch do not
    depend on each other; every dependency sits in an earlier batch.
    """
    topology: Topology
    batches: List[List[str]] = []

    def __iter__(self) -> Iterator[List[str]]:  # type: ignore[override]
        return iter(self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    def batch_index(self, service_id: str) -> int:
        for index, batch in enumerate(self.batches):
            if service_id in batch:
                return index
        raise KeyError(service_id)

    @property
    def service_ids(self) -> List[str]:
        return [service_id for batch in self.batches for service_id in batch]
