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

import json

import pytest

from tierup.errors import StateStoreError
from tierup.MODELS.state import ApplyRecord, Handle, ServiceOutcome, ServiceStatus, Action
from tierup.STATE.state_store import JsonStateStore, MemoryStateStore


def sample_record():
    return ApplyRecord(
        topology_hash="abc",
        outcomes={
            "db": ServiceOutcome(
                status=ServiceStatus.RUNNING,
                action=Action.CREATE,
                spec_hash="h1",
                handle=Handle(driver="docker", ref="c0ffee"),
                running=True,
                attempts=1,
            ),
            "api": ServiceOutcome(status=ServiceStatus.FAILED, error="boom", depends_on=("db",)),
        },
    )


class TestJsonStateStore:
    def test_missing_file_loads_empty(self, tmp_path):
        assert JsonStateStore(str(tmp_path / "state.json")).load() is None

    def test_save_then_load(self, tmp_path):
        store = JsonStateStore(str(tmp_path / "nested" / "state.json"))
        record = sample_record()
        store.save(record)

        loaded = store.load()
        assert loaded == record
        assert loaded.outcomes["db"].handle.ref == "c0ffee"
        assert loaded.observed_states()["db"].convergent

    def test_no_temporary_files_left(self, tmp_path):
        store = JsonStateStore(str(tmp_path / "state.json"))
        store.save(sample_record())
        store.save(sample_record())
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_truncated_file_loads_empty(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        store.save(sample_record())
        content = path.read_text()
        path.write_text(content[: len(content) // 2])

        assert store.load() is None

    def test_tampered_record_loads_empty(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        store.save(sample_record())
        envelope = json.loads(path.read_text())
        envelope["record"]["outcomes"]["api"]["status"] = "running"
        path.write_text(json.dumps(envelope))

        assert store.load() is None

    def test_unknown_version_loads_empty(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        store.save(sample_record())
        envelope = json.loads(path.read_text())
        envelope["version"] = 99
        path.write_text(json.dumps(envelope))

        assert store.load() is None

    def test_not_an_envelope_loads_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2, 3]")
        assert JsonStateStore(str(path)).load() is None

    def test_clear(self, tmp_path):
        store = JsonStateStore(str(tmp_path / "state.json"))
        store.save(sample_record())
        store.clear()
        store.clear()
        assert store.load() is None

    def test_unwritable_location(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        store = JsonStateStore(str(blocker / "state.json"))
        with pytest.raises(StateStoreError):
            store.save(sample_record())


class TestMemoryStateStore:
    def test_counts_saves_and_copies(self):
        store = MemoryStateStore()
        record = sample_record()
        store.save(record)
        record.outcomes.clear()

        assert store.saves == 1
        assert set(store.load().outcomes) == {"api", "db"}
