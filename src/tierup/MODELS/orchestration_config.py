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
Models for overall orchestration configuration.
"""
import os
from enum import Enum
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class FailurePolicy(str, Enum):
    """What to do with the rest of the plan once a service has failed."""

    CONTINUE = "continue"  # keep converging independent branches
    ABORT = "abort"  # stop after the batch that failed


class DriverKind(str, Enum):
    DOCKER = "docker"
    PROCESS = "process"
    MEMORY = "memory"


class ReconcilerConfig(BaseModel):
    """
    Retry, backoff and parallelism settings for the reconciler.
    """
    max_attempts: int = Field(default=3, ge=1)
    backoff_initial: float = Field(default=0.5, ge=0.0)
    backoff_max: float = Field(default=10.0, ge=0.0)
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    max_parallel: int = Field(default=8, ge=1)
    prune: bool = True


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a tierup invocation.
    """
    spec_path: str = "tierup.yml"
    state_path: str = os.path.join(".tierup", "state.json")
    driver: DriverKind = DriverKind.DOCKER
    refresh: bool = True
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None) -> "OrchestrationConfig":
        """
        Builds a configuration from TIERUP_* environment variables.

        :param env_file: Optional .env file loaded first; real environment variables win.
        :param environ: Environment to read instead of os.environ.
        :return: The resulting configuration.
        """
        if environ is None:
            load_dotenv(env_file)
            environ = dict(os.environ)

        top = {
            "spec_path": environ.get("TIERUP_SPEC"),
            "state_path": environ.get("TIERUP_STATE"),
            "driver": environ.get("TIERUP_DRIVER"),
            "refresh": environ.get("TIERUP_REFRESH"),
        }
        reconciler = {
            "max_attempts": environ.get("TIERUP_MAX_ATTEMPTS"),
            "backoff_initial": environ.get("TIERUP_BACKOFF_INITIAL"),
            "backoff_max": environ.get("TIERUP_BACKOFF_MAX"),
            "failure_policy": environ.get("TIERUP_FAILURE_POLICY"),
            "max_parallel": environ.get("TIERUP_MAX_PARALLEL"),
            "prune": environ.get("TIERUP_PRUNE"),
        }
        data = {k: v for k, v in top.items() if v is not None}
        data["reconciler"] = {k: v for k, v in reconciler.items() if v is not None}
        return cls.model_validate(data)
