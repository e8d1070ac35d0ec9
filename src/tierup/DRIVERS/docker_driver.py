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
Runtime driver backed by the docker command line client.
"""
import json
import logging
import subprocess
import threading
from typing import Any, Dict, List, Optional

from ..errors import DriverError, TransientDriverError
from ..MODELS.service_spec import ServiceSpec
from ..MODELS.state import Handle, HealthStatus, ObservedState
from .runtime_driver import RuntimeDriver

logger = logging.getLogger(__name__)

SERVICE_LABEL = "io.tierup.service"
HASH_LABEL = "io.tierup.spec-hash"

# stderr fragments that mean "try again later" rather than "this will never work"
TRANSIENT_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "connection refused",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "toomanyrequests",
    "temporary failure in name resolution",
    "service unavailable",
)


class DockerDriver(RuntimeDriver):
    """
    Runs each service as a named container on a shared user network, so
    services reach each other by their identifier.
    """

    name = "docker"

    def __init__(self,
                 binary: str = "docker",
                 project: str = "tierup",
                 network: Optional[str] = None,
                 timeout: float = 120.0):
        """
        Initializes the driver.

        :param binary: Docker client executable.
        :param project: Prefix for container names.
        :param network: User network to attach containers to; defaults to <project>_default.
        :param timeout: Seconds to wait for a single docker command.
        """
        self.binary = binary
        self.project = project
        self.network = network or f"{project}_default"
        self.timeout = timeout
        self._network_ready = False
        self._network_lock = threading.Lock()

    def container_name(self, service_id: str) -> str:
        return f"{self.project}_{service_id}"

    def start(self, spec: ServiceSpec) -> Handle:
        name = self.container_name(spec.id)
        existing = self._inspect_raw(name)
        if existing is not None:
            labels = (existing.get("Config") or {}).get("Labels") or {}
            running = (existing.get("State") or {}).get("Running", False)
            if running and labels.get(HASH_LABEL) == spec.spec_hash:
                logger.debug("Container %s already running with current spec", name)
                return self._handle(existing["Id"])
            logger.info("Replacing container %s", name)
            self._run(["rm", "-f", name])

        self._ensure_network()
        result = self._run(self.run_arguments(spec))
        container_id = result.stdout.strip().splitlines()[-1]
        logger.info("Started container %s (%s)", name, container_id[:12])
        return self._handle(container_id)

    def stop(self, handle: Handle) -> None:
        result = self._run(["rm", "-f", handle.ref], check=False)
        if result.returncode != 0 and "no such container" not in result.stderr.lower():
            raise self._classify(["rm", "-f", handle.ref], result)

    def inspect(self, handle: Handle) -> ObservedState:
        data = self._inspect_raw(handle.ref)
        if data is None:
            return ObservedState(running=False, handle=handle, last_error="container not found")

        state = data.get("State") or {}
        health = (state.get("Health") or {}).get("Status")
        running = bool(state.get("Running"))
        last_error = state.get("Error") or None
        if not running and last_error is None:
            last_error = f"exited({state.get('ExitCode', 0)})"
        return ObservedState(
            running=running,
            handle=handle,
            health=HealthStatus(health) if health in ("starting", "healthy", "unhealthy") else HealthStatus.NONE,
            last_error=last_error,
        )

    def run_arguments(self, spec: ServiceSpec) -> List[str]:
        """
        Builds the ``docker run`` arguments for a service.
        """
        args = [
            "run", "-d",
            "--name", self.container_name(spec.id),
            "--network", self.network,
            "--network-alias", spec.id,
            "--label", f"{SERVICE_LABEL}={spec.id}",
            "--label", f"{HASH_LABEL}={spec.spec_hash}",
            "--restart", spec.restart.value,
        ]
        for port in spec.ports:
            if port.external is None:
                args += ["-p", str(port.internal)]
            else:
                args += ["-p", f"{port.external}:{port.internal}"]
        for key, value in sorted(spec.env.items()):
            args += ["-e", f"{key}={value}"]
        args.append(spec.image)
        args.extend(spec.command)
        return args

    def _ensure_network(self) -> None:
        with self._network_lock:
            if self._network_ready:
                return
            result = self._run(["network", "inspect", self.network], check=False)
            if result.returncode != 0:
                logger.info("Creating network %s", self.network)
                self._run(["network", "create", self.network])
            self._network_ready = True

    def _inspect_raw(self, ref: str) -> Optional[Dict[str, Any]]:
        result = self._run(["inspect", "--type", "container", ref], check=False)
        if result.returncode != 0:
            if "no such" in result.stderr.lower():
                return None
            raise self._classify(["inspect", ref], result)
        try:
            return json.loads(result.stdout)[0]
        except (ValueError, IndexError) as e:
            raise DriverError(f"Unexpected docker inspect output for {ref}") from e

    def _run(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        command = [self.binary] + args
        logger.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                shell=False,
            )
        except FileNotFoundError as e:
            raise DriverError(f"Docker client {self.binary!r} not found") from e
        except subprocess.TimeoutExpired as e:
            raise TransientDriverError(
                f"docker {args[0]} timed out after {self.timeout:.0f}s"
            ) from e

        if check and result.returncode != 0:
            raise self._classify(args, result)
        return result

    def _classify(self, args: List[str], result: subprocess.CompletedProcess) -> DriverError:
        message = (result.stderr or "").strip() or f"exit code {result.returncode}"
        text = f"docker {args[0]} failed: {message}"
        if any(marker in message.lower() for marker in TRANSIENT_MARKERS):
            return TransientDriverError(text)
        return DriverError(text)
