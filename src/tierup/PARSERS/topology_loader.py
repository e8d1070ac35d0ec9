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
Loader for tierup topology documents.

A document lists services with bit-exact field names::

    services:
      - id: db
        image: postgres:16
        ports:
          - {internal: 5432, external: 5432}
        env:
          POSTGRES_PASSWORD: ${DB_PASSWORD}
      - id: api
        image: acme/api:1.4.0
        depends_on: [db]
"""
import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import DuplicateIdentifier, MalformedSpec, UnknownDependency
from ..MODELS.service_spec import ServiceSpec
from ..MODELS.topology import Topology
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

DOCUMENT_FIELDS = {"version", "name", "services"}
SERVICE_FIELDS = set(ServiceSpec.model_fields)
REQUIRED_FIELDS = ("id", "image")


class TopologyLoader:
    """
    Parses and validates topology documents into a Topology.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the loader with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = dict(os.environ) if context is None else context

    def load_file(self, path: str) -> Topology:
        """
        Loads a topology document from a path.

        :param path: Path to the YAML document.
        :return: Validated topology.
        """
        try:
            with open(path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise MalformedSpec(f"Cannot read topology file {path}: {e}") from e
        return self.load_string(content)

    def load_string(self, content: str) -> Topology:
        """
        Loads a topology document from YAML text, interpolating ${VAR} references first.

        :param content: YAML content.
        :return: Validated topology.
        """
        # comment-only lines are left as written; trailing comments are interpolated
        lines = content.splitlines(keepends=True)
        is_comment = [line.lstrip().startswith("#") for line in lines]
        active = "".join(line for line, comment in zip(lines, is_comment) if not comment)
        missing = EnvironmentInterpolator.missing_variables(active, self.context)
        if missing:
            raise MalformedSpec(f"Unset variables in topology: {', '.join(missing)}")
        content = "".join(
            line if comment else EnvironmentInterpolator.interpolate(line, self.context)
            for line, comment in zip(lines, is_comment)
        )

        try:
            raw = yaml.safe_load(content)
        # the timestamp resolver raises ValueError for dates like 2024-13-45
        except (yaml.YAMLError, ValueError) as e:
            raise MalformedSpec(f"Invalid YAML: {e}") from e
        return self.load(raw)

    def load(self, raw: Any) -> Topology:
        """
        Builds a Topology from an already parsed document.

        :param raw: A mapping with a ``services`` list, or a bare list of services.
        :return: Validated topology.
        :raises MalformedSpec: On missing, unknown or mistyped fields.
        :raises DuplicateIdentifier: When two services share an id.
        :raises UnknownDependency: When depends_on names a service not in the document.
        """
        entries = self._service_entries(raw)

        services: Dict[str, ServiceSpec] = {}
        for index, entry in enumerate(entries):
            spec = self._parse_service(index, entry)
            if spec.id in services:
                raise DuplicateIdentifier(spec.id)
            services[spec.id] = spec

        # report unknown edges before the topology validator would
        for spec in services.values():
            for dependency in spec.depends_on:
                if dependency not in services:
                    raise UnknownDependency(spec.id, dependency)

        self._check_published_ports(services)

        topology = Topology(services=services)
        logger.debug("Loaded topology with %d services", len(topology))
        return topology

    def _service_entries(self, raw: Any) -> List[Any]:
        if raw is None:
            return []
        if isinstance(raw, list):
            return raw
        if not isinstance(raw, dict):
            raise MalformedSpec("Topology document must be a mapping or a list of services")

        unknown = set(raw) - DOCUMENT_FIELDS
        if unknown:
            raise MalformedSpec(f"Unknown top-level fields: {', '.join(sorted(map(str, unknown)))}")

        entries = raw.get("services") or []
        if not isinstance(entries, list):
            raise MalformedSpec("'services' must be a list of service definitions")
        return entries

    def _parse_service(self, index: int, entry: Any) -> ServiceSpec:
        """
        Validates a single service definition.

        :param index: Position in the document, used in error messages.
        :param entry: The raw service mapping.
        :return: A ServiceSpec instance.
        """
        if not isinstance(entry, dict):
            raise MalformedSpec(f"Service #{index} must be a mapping")

        label = str(entry.get("id", f"#{index}"))
        for field in REQUIRED_FIELDS:
            if entry.get(field) in (None, ""):
                raise MalformedSpec(f"Service {label} is missing required field {field!r}", [label])

        unknown = set(entry) - SERVICE_FIELDS
        if unknown:
            raise MalformedSpec(
                f"Service {label} has unknown fields: {', '.join(sorted(map(str, unknown)))}", [label]
            )

        data = dict(entry)
        data["id"] = str(data["id"])
        if "env" in data:
            data["env"] = self._coerce_env(label, data["env"])
        if data.get("depends_on") is None:
            data.pop("depends_on", None)
        elif isinstance(data["depends_on"], str):
            data["depends_on"] = [data["depends_on"]]
        if data.get("ports") is None:
            data.pop("ports", None)
        if data.get("restart") is False:
            # YAML reads a bare `no` as false
            data["restart"] = "no"

        try:
            return ServiceSpec.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise MalformedSpec(f"Service {label} is invalid: {problems}", [label]) from e

    def _coerce_env(self, label: str, env: Any) -> Dict[str, str]:
        if env is None:
            return {}
        if not isinstance(env, dict):
            raise MalformedSpec(f"Service {label}: 'env' must be a mapping", [label])

        result = {}
        for key, value in env.items():
            if isinstance(value, (dict, list)):
                raise MalformedSpec(f"Service {label}: env {key} must be a scalar", [label])
            if isinstance(value, bool):
                value = "true" if value else "false"
            result[str(key)] = "" if value is None else str(value)
        return result

    def _check_published_ports(self, services: Dict[str, ServiceSpec]) -> None:
        owners: Dict[int, str] = {}
        for spec in services.values():
            for port in spec.ports:
                if port.external is None:
                    continue
                owner = owners.setdefault(port.external, spec.id)
                if owner != spec.id:
                    raise MalformedSpec(
                        f"Host port {port.external} is published by both {owner} and {spec.id}",
                        [owner, spec.id],
                    )
