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
Stable content hashing for specs and state records.
"""
import hashlib
import json
from typing import Any


def canonical_json(data: Any) -> str:
    """
    Serializes data to JSON with sorted keys and no insignificant whitespace,
    so equal values always produce equal text.
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(data: Any) -> str:
    """
    Returns the hex SHA-256 digest of the canonical JSON form of ``data``.
    """
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()
