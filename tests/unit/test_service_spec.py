import pytest

from tierup.MODELS.service_spec import ServiceSpec


def test_env_cannot_be_changed_after_load():
    spec = ServiceSpec(id="api", image="acme/api:1.0", env={"MODE": "prod"})
    original = spec.spec_hash

    with pytest.raises(TypeError):
        spec.env["MODE"] = "debug"

    assert spec.env == {"MODE": "prod"}
    assert spec.spec_hash == original


def test_default_env_is_immutable():
    spec = ServiceSpec(id="api", image="acme/api:1.0")
    with pytest.raises(TypeError):
        spec.env["MODE"] = "debug"


def test_env_order_does_not_change_hash():
    first = ServiceSpec(id="api", image="acme/api:1.0", env={"A": "1", "B": "2"})
    second = ServiceSpec(id="api", image="acme/api:1.0", env={"B": "2", "A": "1"})

    assert first.spec_hash == second.spec_hash
    assert first.model_dump()["env"] == {"A": "1", "B": "2"}


def test_dependencies_do_not_change_hash():
    alone = ServiceSpec(id="api", image="acme/api:1.0")
    wired = ServiceSpec(id="api", image="acme/api:1.0", depends_on=("db",))
    assert alone.spec_hash == wired.spec_hash
