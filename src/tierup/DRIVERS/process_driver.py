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
Runtime driver that runs each service's command as a native local process.
"""
import json
import logging
import os
import subprocess
import threading
from typing import Dict, Optional

import psutil

from ..errors import DriverError, TransientDriverError
from ..MODELS.service_spec import ServiceSpec
from ..MODELS.state import Handle, HealthStatus, ObservedState
from .runtime_driver import RuntimeDriver

logger = logging.getLogger(__name__)


class ProcessDriver(RuntimeDriver):
    """
    Starts services as child processes with their declared environment.

    The image reference is informational here; the service must declare a
    ``command``. Handles are ``<pid>@<create_time>`` so a recycled PID is
    never mistaken for the original service. The last process started for
    each service is recorded in a pid file, so a new driver instance adopts
    it instead of starting a second copy.
    """

    name = "process"

    def __init__(self, base_dir: str = ".", stop_timeout: float = 10.0):
        """
        Initializes the driver.

        :param base_dir: Directory under which .tierup/logs/<id>.log and
            .tierup/run/<id>.pid files are written.
        :param stop_timeout: Seconds to wait after SIGTERM before killing.
        """
        self.base_dir = base_dir
        self.stop_timeout = stop_timeout
        self._lock = threading.Lock()

    def log_path(self, service_id: str) -> str:
        return os.path.join(self.base_dir, ".tierup", "logs", f"{service_id}.log")

    def run_dir(self) -> str:
        return os.path.join(self.base_dir, ".tierup", "run")

    def pid_path(self, service_id: str) -> str:
        return os.path.join(self.run_dir(), f"{service_id}.pid")

    def start(self, spec: ServiceSpec) -> Handle:
        if not spec.command:
            raise DriverError(f"Service {spec.id} has no command to run")

        with self._lock:
            known = self._read_pid_file(spec.id)
        if known and known["spec_hash"] == spec.spec_hash:
            handle = self._handle(known["ref"])
            if self.inspect(handle).running:
                logger.debug("[%s] Adopting running process %s", spec.id, handle.ref)
                return handle

        env = os.environ.copy()
        env.update(spec.env)

        log_file = self.log_path(spec.id)
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        logger.info("[%s] Starting command: %s", spec.id, " ".join(spec.command))
        with open(log_file, "a") as log_handle:
            try:
                popen = subprocess.Popen(
                    list(spec.command),
                    env=env,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    # Avoid shell=True for security reasons (CWE-78)
                    shell=False,
                    start_new_session=True,
                )
            except OSError as e:
                raise DriverError(f"[{spec.id}] Failed to start: {e}") from e

        try:
            created = psutil.Process(popen.pid).create_time()
        except psutil.NoSuchProcess:
            created = 0.0
        handle = self._handle(f"{popen.pid}@{created:.3f}")
        with self._lock:
            self._write_pid_file(spec.id, {"ref": handle.ref, "spec_hash": spec.spec_hash})
        return handle

    def stop(self, handle: Handle) -> None:
        process = self._process(handle)
        if process is not None:
            logger.info("Stopping process %s", process.pid)
            try:
                process.terminate()
                process.wait(timeout=self.stop_timeout)
            except psutil.TimeoutExpired:
                logger.warning("Process %s did not terminate, killing...", process.pid)
                try:
                    process.kill()
                    process.wait(timeout=self.stop_timeout)
                except psutil.NoSuchProcess:
                    pass
                except psutil.TimeoutExpired as e:
                    raise TransientDriverError(f"Process {process.pid} is still running after kill") from e
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                raise DriverError(f"Not permitted to stop process {process.pid}") from e
        with self._lock:
            self._remove_pid_files(handle)

    def inspect(self, handle: Handle) -> ObservedState:
        process = self._process(handle)
        if process is None:
            return ObservedState(running=False, handle=handle, last_error="process not found")
        try:
            status = process.status()
        except psutil.NoSuchProcess:
            return ObservedState(running=False, handle=handle, last_error="process not found")
        if status == psutil.STATUS_ZOMBIE:
            return ObservedState(running=False, handle=handle, last_error="process exited")
        return ObservedState(running=True, handle=handle, health=HealthStatus.NONE)

    def _process(self, handle: Handle) -> Optional[psutil.Process]:
        pid_text, _, created = handle.ref.partition("@")
        try:
            process = psutil.Process(int(pid_text))
            if created and abs(process.create_time() - float(created)) > 0.01:
                return None
            return process
        except (ValueError, psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def _read_pid_file(self, service_id: str) -> Optional[Dict[str, str]]:
        """
        Reads the record of the last process started for a service, by any
        driver instance sharing this base directory.
        """
        path = self.pid_path(service_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable pid file %s: %s", path, e)
            return None
        if not isinstance(data, dict) or not {"ref", "spec_hash"} <= set(data):
            logger.warning("Ignoring malformed pid file %s", path)
            return None
        return data

    def _write_pid_file(self, service_id: str, data: Dict[str, str]) -> None:
        path = self.pid_path(service_id)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        try:
            with open(path, "w") as f:
                json.dump(data, f)
        except OSError as e:
            logger.warning("Cannot write pid file %s: %s", path, e)

    def _remove_pid_files(self, handle: Handle) -> None:
        run_dir = self.run_dir()
        if not os.path.isdir(run_dir):
            return
        for entry in os.listdir(run_dir):
            if not entry.endswith(".pid"):
                continue
            service_id = entry[:-len(".pid")]
            known = self._read_pid_file(service_id)
            if known and known["ref"] == handle.ref:
                try:
                    os.remove(self.pid_path(service_id))
                except OSError as e:
                    logger.warning("Cannot remove pid file for %s: %s", service_id, e)
