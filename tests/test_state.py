import json

from hub import StateStore


def test_in_memory_store():
    store = StateStore()
    store.set("k", [1, 2])
    assert store.get("k") == [1, 2]
    assert "k" in store
    store.delete("k")
    assert store.get("k", "default") == "default"


def test_values_survive_reopen(tmp_path):
    path = tmp_path / "nested" / "state.json"
    StateStore(path).set("quota-remaining", 12)

    assert json.loads(path.read_text()) == {"quota-remaining": 12}
    assert StateStore(path).get("quota-remaining") == 12


def test_corrupt_file_is_ignored(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")

    store = StateStore(path)
    assert store.get("custom-servers") is None

    store.set("custom-servers", [])
    assert json.loads(path.read_text()) == {"custom-servers": []}
