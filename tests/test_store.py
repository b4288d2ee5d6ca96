import json

from store import JsonStore, open_store


def make_store(tmp_path, name="things"):
    store = open_store(str(tmp_path), name, "thg")
    store.load()
    return store


def test_missing_file_loads_empty(tmp_path):
    assert make_store(tmp_path).records == []


def test_corrupt_file_loads_empty(tmp_path, caplog):
    (tmp_path / "things.json").write_text("{not json", encoding="utf-8")
    store = make_store(tmp_path)
    assert store.records == []
    assert "Could not load things" in caplog.text


def test_insert_persists_with_metadata(tmp_path):
    store = make_store(tmp_path)
    record = store.insert({"name": "a"})

    assert record["id"].startswith("thg-")
    assert record["createdAt"] == record["updatedAt"]
    on_disk = json.loads((tmp_path / "things.json").read_text(encoding="utf-8"))
    assert on_disk == [record]

    reloaded = make_store(tmp_path)
    assert reloaded.get(record["id"]) == record


def test_find_with_membership(tmp_path):
    store = make_store(tmp_path)
    store.insert({"status": "pending"})
    store.insert({"status": "dispensed"})
    store.insert({"status": "cancelled"})

    assert store.count(status="pending") == 1
    assert store.count(status=("pending", "dispensed")) == 2
    assert store.find_one(status="missing") is None


def test_update_and_delete(tmp_path):
    store = make_store(tmp_path)
    record = store.insert({"name": "a"})

    updated = store.update(record["id"], {"name": "b", "id": "hijack"})
    assert updated["name"] == "b"
    assert updated["id"] == record["id"]
    assert store.update("nope", {"name": "c"}) is None

    assert store.delete(record["id"]) is True
    assert store.delete(record["id"]) is False


def test_exists_other_is_case_insensitive(tmp_path):
    store = make_store(tmp_path)
    record = store.insert({"email": "Someone@Example.com"})

    assert store.exists_other("email", "someone@example.com")
    assert not store.exists_other("email", "someone@example.com", exclude_id=record["id"])
    assert not store.exists_other("email", None)


def test_next_code_is_sequential(tmp_path):
    store = make_store(tmp_path)
    assert store.next_code("code", "RX") == "RX000001"
    store.insert({"code": "RX000001"})
    store.insert({"code": "RX000007"})
    store.insert({"code": "legacy"})
    assert store.next_code("code", "RX") == "RX000008"


def test_save_failure_is_logged(tmp_path, caplog):
    store = JsonStore("things", str(tmp_path / "missing-dir" / "things.json"), "thg")
    store.insert({"name": "a"})
    assert len(store.records) == 1
    assert "Could not save things" in caplog.text
