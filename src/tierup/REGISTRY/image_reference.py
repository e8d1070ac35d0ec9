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
Image reference parsing and validation.
Parses references like 'nginx', 'node:20-alpine' or 'ghcr.io/acme/api@sha256:...'.
"""

import re
from typing import Optional
from dataclasses import dataclass

_COMPONENT = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$')
_TAG = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
_DIGEST = re.compile(r'^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[A-Fa-f0-9]{32,}$')


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed container image reference.

    Examples:
        - nginx -> docker.io/library/nginx:latest
        - node:20-alpine -> docker.io/library/node:20-alpine
        - acme/api:v2 -> docker.io/acme/api:v2
        - localhost:5000/api:v1 -> localhost:5000/api:v1
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse and validate an image reference string.

        Args:
            reference: Image reference string (e.g., 'postgres:16', 'acme/api:v1')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or not a valid image name.
        """
        if not reference or reference != reference.strip():
            raise ValueError(f"Invalid image reference: {reference!r}")

        remainder = reference
        digest = None
        if "@" in remainder:
            remainder, digest = remainder.rsplit("@", 1)
            if not _DIGEST.match(digest):
                raise ValueError(f"Invalid digest in image reference: {reference!r}")

        # A colon after the last slash separates the tag; before it, a registry port
        tag = None
        last_slash = remainder.rfind("/")
        last_colon = remainder.rfind(":")
        if last_colon > last_slash:
            remainder, tag = remainder[:last_colon], remainder[last_colon + 1:]
            if not _TAG.match(tag):
                raise ValueError(f"Invalid tag in image reference: {reference!r}")

        parts = remainder.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            parts = parts[1:]
        else:
            registry = cls.DEFAULT_REGISTRY
            if len(parts) == 1:
                parts = ["library"] + parts

        for component in parts:
            if not _COMPONENT.match(component):
                raise ValueError(f"Invalid repository name in image reference: {reference!r}")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository="/".join(parts), tag=tag, digest=digest)

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag}"

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.digest:
            return f"{repo}@{self.digest}"
        return f"{repo}:{self.tag}"

    def __str__(self) -> str:
        return self.short_name
