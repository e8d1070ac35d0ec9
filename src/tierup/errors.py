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
Error classes for tierup.

Spec errors are fatal and raised before anything is executed. Driver errors
are classified at the runtime boundary so the reconciler knows what to retry:

- TransientDriverError: safe to retry (timeouts, daemon temporarily unavailable)
- DriverError: do not retry (bad image, missing runtime binary, invalid request)

A service that cannot be converged is not an exception; it is recorded with
a ``failed`` status in the apply record.
"""
from typing import Iterable, Optional


class TierupError(Exception):
    """Base exception for tierup."""
    pass


class SpecError(TierupError):
    """
    Base class for errors found while loading or planning a topology.

    Attributes:
        identifiers: The offending service identifiers, if any.
    """

    def __init__(self, message: str, identifiers: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.identifiers = sorted(identifiers or [])


class MalformedSpec(SpecError):
    """A required field is missing, a field has the wrong shape, or the document is not valid YAML."""
    pass


class DuplicateIdentifier(SpecError):
    """Two services in the same document share an identifier."""

    def __init__(self, identifier: str):
        super().__init__(f"Duplicate service identifier: {identifier!r}", [identifier])
        self.identifier = identifier


class UnknownDependency(SpecError):
    """A dependency edge targets an identifier absent from the document."""

    def __init__(self, service: str, dependency: str):
        super().__init__(
            f"Service {service!r} depends on unknown service {dependency!r}",
            [service, dependency],
        )
        self.service = service
        self.dependency = dependency


class CyclicDependency(SpecError):
    """The dependency graph contains a cycle."""

    def __init__(self, members: Iterable[str]):
        members = sorted(set(members))
        super().__init__(
            f"Cyclic dependency between services: {', '.join(members)}", members
        )
        self.members = members


class DriverError(TierupError):
    """
    Permanent runtime driver error - do not retry.

    Examples:
    - Image does not exist
    - Container runtime binary not installed
    - Service has nothing to run
    """
    pass


class TransientDriverError(DriverError):
    """
    Transient runtime driver error - safe to retry.

    Examples:
    - Runtime call timed out
    - Daemon temporarily unavailable
    - Container not yet running or not yet healthy after start
    """
    pass


class StateStoreError(TierupError):
    """The state store could not be written."""
    pass
