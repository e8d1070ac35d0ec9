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
Dependency planning: groups services into batches that can start concurrently.
"""
import logging
from typing import Dict, Iterable, List, Mapping, Set

from ..errors import CyclicDependency
from ..MODELS.topology import ExecutionPlan, Topology

logger = logging.getLogger(__name__)


class DependencyPlanner:
    """
    Computes startup and teardown order of services from their dependencies.
    """
    def plan(self, topology: Topology) -> ExecutionPlan:
        """
        Orders a topology into maximal batches.

        :param topology: The validated topology.
        :return: Execution plan; every dependency sits in an earlier batch than its dependents.
        :raises CyclicDependency: If the dependency graph is not acyclic.
        """
        batches = self.order(topology.dependencies())
        logger.debug("Planned %d batches: %s", len(batches), batches)
        return ExecutionPlan(topology=topology, batches=batches)

    def order(self, dependencies: Mapping[str, Iterable[str]]) -> List[List[str]]:
        """
        Kahn's algorithm by levels over a plain ``service -> dependencies`` mapping.

        Each pass takes every node whose dependencies are all satisfied, so a
        service lands in the earliest batch it can.

        :param dependencies: Dependency edges; targets outside the mapping are ignored.
        :return: Batches of service names, each sorted.
        :raises CyclicDependency: Naming the members of a cycle.
        """
        edges: Dict[str, Set[str]] = {
            name: {d for d in deps if d in dependencies} for name, deps in dependencies.items()
        }
        dependents: Dict[str, Set[str]] = {name: set() for name in edges}
        for name, deps in edges.items():
            for dep in deps:
                dependents[dep].add(name)

        in_degree = {name: len(deps) for name, deps in edges.items()}
        ready = sorted(name for name, degree in in_degree.items() if degree == 0)
        batches: List[List[str]] = []
        placed = 0

        while ready:
            batches.append(ready)
            placed += len(ready)
            following = set()
            for name in ready:
                for dependent in dependents[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.add(dependent)
            ready = sorted(following)

        if placed != len(edges):
            remaining = {name for name, degree in in_degree.items() if degree > 0}
            raise CyclicDependency(self._find_cycle(edges, remaining))

        return batches

    def teardown_order(self, dependencies: Mapping[str, Iterable[str]]) -> List[List[str]]:
        """
        Batches for stopping services: dependents go before what they depend on.
        """
        return list(reversed(self.order(dependencies)))

    def _find_cycle(self, edges: Dict[str, Set[str]], remaining: Set[str]) -> List[str]:
        """
        Walks dependency edges among the unplaced nodes until one repeats.

        Every unplaced node still has an unplaced dependency, so the walk can
        always continue and must eventually revisit a node.
        """
        start = min(remaining)
        path: List[str] = []
        position: Dict[str, int] = {}
        node = start
        while node not in position:
            position[node] = len(path)
            path.append(node)
            node = min(d for d in edges[node] if d in remaining)
        return path[position[node]:]
