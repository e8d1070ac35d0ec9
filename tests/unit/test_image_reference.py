"""
Unit tests for image reference parsing.
"""
import pytest
from tierup.REGISTRY.image_reference import ImageReference


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        """Official images live under library/ with the default tag."""
        ref = ImageReference.parse("postgres")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/postgres"
        assert ref.tag == "latest"

    def test_parse_with_tag(self):
        ref = ImageReference.parse("node:20-alpine")
        assert ref.repository == "library/node"
        assert ref.tag == "20-alpine"

    def test_parse_user_image(self):
        ref = ImageReference.parse("acme/api:1.4.0")
        assert ref.registry == "docker.io"
        assert ref.repository == "acme/api"
        assert ref.tag == "1.4.0"

    def test_parse_full_reference(self):
        ref = ImageReference.parse("ghcr.io/acme/web/frontend:v2")
        assert ref.registry == "ghcr.io"
        assert ref.repository == "acme/web/frontend"
        assert ref.tag == "v2"

    def test_parse_with_digest(self):
        digest = "sha256:" + "a" * 64
        ref = ImageReference.parse(f"acme/api@{digest}")
        assert ref.digest == digest
        assert ref.tag is None
        assert ref.short_name == f"acme/api@{digest}"

    def test_parse_localhost_registry(self):
        ref = ImageReference.parse("localhost:5000/api:v1")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "api"
        assert ref.tag == "v1"

    def test_registry_port_is_not_a_tag(self):
        ref = ImageReference.parse("registry.local:5000/team/api")
        assert ref.registry == "registry.local:5000"
        assert ref.tag == "latest"

    def test_names(self):
        ref = ImageReference.parse("nginx:1.25")
        assert ref.full_name == "docker.io/library/nginx:1.25"
        assert str(ref) == "nginx:1.25"
        assert str(ImageReference.parse("quay.io/acme/api")) == "quay.io/acme/api:latest"

    @pytest.mark.parametrize("reference", [
        "",
        " nginx",
        "Nginx",
        "acme/api:",
        "acme/api:bad tag",
        "acme//api",
        "acme/api@sha256:xyz",
    ])
    def test_invalid_references(self, reference):
        with pytest.raises(ValueError):
            ImageReference.parse(reference)
