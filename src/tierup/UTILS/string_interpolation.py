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
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict, List

# ${VAR}, ${VAR:-default} or ${VAR:+value}; $$ escapes a literal dollar sign
_PATTERN = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in topology documents.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value} and $$ as an escaped '$'.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises KeyError: If a bare ${VAR} is not set in the context.
        """
        def replace(match):
            if match.group(0) == '$$':
                return '$'

            var_name = match.group(1)
            modifier = match.group(2)  # None, '-', or '+'
            alt_value = match.group(3)
            value = context.get(var_name)

            if modifier == '-':
                # use default if VAR is unset or empty
                return value if value else alt_value
            if modifier == '+':
                # use alt_value only if VAR is set and not empty
                return alt_value if value else ''
            if value is None:
                raise KeyError(var_name)
            return value

        return _PATTERN.sub(replace, template)

    @staticmethod
    def missing_variables(template: str, context: Dict[str, str]) -> List[str]:
        """
        Lists the bare ${VAR} references that the context cannot satisfy.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: Sorted unique variable names.
        """
        missing = set()
        for match in _PATTERN.finditer(template):
            name = match.group(1)
            if name and match.group(2) is None and name not in context:
                missing.add(name)
        return sorted(missing)
