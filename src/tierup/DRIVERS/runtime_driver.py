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
The runtime driver contract the reconciler talks to.
"""
from abc import ABC, abstractmethod

from ..MODELS.service_spec import ServiceSpec
from ..MODELS.state import Handle, ObservedState


class RuntimeDriver(ABC):
    """
    Abstracts over starting, stopping and inspecting a service.

    Implementations must be best-effort idempotent: ``start`` for a service
    already running with the same spec returns its existing handle, and
    ``stop`` on a handle that no longer exists is a no-op.

    Implementations raise ``TransientDriverError`` for failures worth
    retrying and ``DriverError`` for everything else.
    """

    name = "abstract"

    @abstractmethod
    def start(self, spec: ServiceSpec) -> Handle:
        """Starts (or adopts) the service and returns its handle."""

    @abstractmethod
    def stop(self, handle: Handle) -> None:
        """Stops and removes the service behind ``handle``."""

    @abstractmethod
    def inspect(self, handle: Handle) -> ObservedState:
        """Reports the current runtime state behind ``handle``."""

    def _handle(self, ref: str) -> Handle:
        return Handle(driver=self.name, ref=ref)
