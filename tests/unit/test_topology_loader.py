import pytest
import yaml
from pydantic import ValidationError

from tierup.errors import CyclicDependency, DuplicateIdentifier, MalformedSpec, UnknownDependency
from tierup.MODELS.service_spec import RestartPolicyCondition
from tierup.PARSERS.topology_loader import TopologyLoader

THREE_TIER = """
services:
  - id: db
    image: postgres:16
    ports:
      - internal: 5432
        external: 5432
    env:
      POSTGRES_PASSWORD: ${DB_PASSWORD}
  - id: api
    image: acme/api:1.4.0
    ports:
      - {internal: 3000, external: 3000}
    env:
      DATABASE_URL: postgres://db:5432/app
      DEBUG: true
      WORKERS: 4
    depends_on: [db]
    restart: unless-stopped
  - id: frontend
    image: acme/frontend:2.0.1
    ports:
      - {internal: 80, external: 8080}
    depends_on:
      - api
"""


def load(document):
    return TopologyLoader(context={}).load(document)


def test_load_three_tier():
    topology = TopologyLoader(context={"DB_PASSWORD": "s3cret"}).load_string(THREE_TIER)

    assert list(topology) == ["db", "api", "frontend"]
    assert topology["db"].env == {"POSTGRES_PASSWORD": "s3cret"}
    assert topology["db"].ports[0].internal == 5432
    assert topology["api"].env["DEBUG"] == "true"
    assert topology["api"].env["WORKERS"] == "4"
    assert topology["api"].depends_on == ("db",)
    assert topology["api"].restart == RestartPolicyCondition.UNLESS_STOPPED
    assert topology["frontend"].ports[0].external == 8080
    assert topology["frontend"].restart == RestartPolicyCondition.NO


def test_load_file(tmp_path):
    document = {
        "version": "1",
        "services": [
            {"id": "web", "image": "nginx:1.25", "ports": [{"internal": 80, "external": 8080}]},
        ],
    }
    path = tmp_path / "tierup.yml"
    path.write_text(yaml.dump(document))

    topology = TopologyLoader(context={}).load_file(str(path))
    assert topology["web"].image == "nginx:1.25"


def test_missing_file_is_malformed(tmp_path):
    with pytest.raises(MalformedSpec):
        TopologyLoader(context={}).load_file(str(tmp_path / "missing.yml"))


def test_bare_list_and_empty_documents():
    assert len(load([{"id": "a", "image": "busybox"}])) == 1
    assert len(load(None)) == 0
    assert len(load({"services": []})) == 0


def test_missing_id():
    with pytest.raises(MalformedSpec):
        load({"services": [{"image": "busybox"}]})


def test_missing_image():
    with pytest.raises(MalformedSpec) as info:
        load({"services": [{"id": "api"}]})
    assert info.value.identifiers == ["api"]


def test_unknown_service_field_rejected():
    with pytest.raises(MalformedSpec, match="healthcheck"):
        load({"services": [{"id": "api", "image": "busybox", "healthcheck": {}}]})


def test_unknown_top_level_field_rejected():
    with pytest.raises(MalformedSpec, match="networks"):
        load({"services": [], "networks": {}})


def test_unknown_port_field_rejected():
    with pytest.raises(MalformedSpec):
        load({"services": [{"id": "api", "image": "busybox", "ports": [{"internal": 80, "protocol": "udp"}]}]})


def test_port_out_of_range():
    with pytest.raises(MalformedSpec):
        load({"services": [{"id": "api", "image": "busybox", "ports": [{"internal": 70000}]}]})


def test_invalid_image_reference():
    with pytest.raises(MalformedSpec):
        load({"services": [{"id": "api", "image": "Not A Valid Image"}]})


def test_env_must_be_mapping():
    with pytest.raises(MalformedSpec):
        load({"services": [{"id": "api", "image": "busybox", "env": ["A=1"]}]})


def test_duplicate_identifier():
    with pytest.raises(DuplicateIdentifier) as info:
        load({"services": [{"id": "api", "image": "busybox"}, {"id": "api", "image": "nginx"}]})
    assert info.value.identifier == "api"


def test_unknown_dependency():
    with pytest.raises(UnknownDependency) as info:
        load({"services": [{"id": "api", "image": "busybox", "depends_on": ["db"]}]})
    assert info.value.service == "api"
    assert info.value.dependency == "db"


def test_self_loop_is_a_cycle():
    with pytest.raises(CyclicDependency) as info:
        load({"services": [{"id": "api", "image": "busybox", "depends_on": ["api"]}]})
    assert info.value.members == ["api"]


def test_duplicate_published_port():
    with pytest.raises(MalformedSpec, match="8080"):
        load({"services": [
            {"id": "a", "image": "busybox", "ports": [{"internal": 80, "external": 8080}]},
            {"id": "b", "image": "busybox", "ports": [{"internal": 81, "external": 8080}]},
        ]})


def test_invalid_yaml():
    with pytest.raises(MalformedSpec):
        TopologyLoader(context={}).load_string("services: [\n  - id: a\n")


def test_unset_variable():
    with pytest.raises(MalformedSpec, match="DB_PASSWORD"):
        TopologyLoader(context={}).load_string(THREE_TIER)


def test_default_variable_value():
    content = "services:\n  - id: api\n    image: acme/api:${API_TAG:-1.0.0}\n"
    topology = TopologyLoader(context={}).load_string(content)
    assert topology["api"].image == "acme/api:1.0.0"


def test_yaml_no_restart_policy():
    topology = TopologyLoader(context={}).load_string(
        "services:\n  - id: api\n    image: busybox\n    restart: no\n"
    )
    assert topology["api"].restart == RestartPolicyCondition.NO


def test_ports_are_a_set():
    topology = load({"services": [{"id": "api", "image": "busybox", "ports": [
        {"internal": 80, "external": 8080},
        {"internal": 80, "external": 8080},
        {"internal": 443},
    ]}]})
    assert len(topology["api"].ports) == 2


def test_command_string_is_split():
    topology = load({"services": [{"id": "api", "image": "busybox", "command": "sleep 60"}]})
    assert topology["api"].command == ("sleep", "60")


def test_specs_are_immutable():
    topology = load({"services": [{"id": "api", "image": "busybox"}]})
    with pytest.raises(ValidationError):
        topology["api"].image = "nginx"


def test_spec_hash_ignores_dependencies():
    first = load({"services": [
        {"id": "db", "image": "postgres:16"},
        {"id": "api", "image": "acme/api:1"},
    ]})
    second = load({"services": [
        {"id": "db", "image": "postgres:16"},
        {"id": "api", "image": "acme/api:1", "depends_on": ["db"]},
    ]})
    third = load({"services": [
        {"id": "db", "image": "postgres:16"},
        {"id": "api", "image": "acme/api:2", "depends_on": ["db"]},
    ]})

    assert first["api"].spec_hash == second["api"].spec_hash
    assert second["api"].spec_hash != third["api"].spec_hash
    assert first.topology_hash != second.topology_hash


def test_commented_out_variable_is_ignored():
    content = (
        "services:\n"
        "  # - id: cache\n"
        "  #   image: redis:${REDIS_TAG}\n"
        "  - id: db\n"
        "    image: postgres:${PG_TAG}\n"
    )
    topology = TopologyLoader({"PG_TAG": "16"}).load_string(content)
    assert list(topology) == ["db"]
    assert topology["db"].image == "postgres:16"


def test_trailing_comment_is_still_interpolated():
    content = "services:\n  - id: db\n    image: postgres:16  # ${PG_TAG}\n"
    with pytest.raises(MalformedSpec):
        TopologyLoader({}).load_string(content)
