import json

from lock_reconciler.core.failure_log import FailureLogMirror


def test_append_creates_the_file(tmp_path):
    mirror = FailureLogMirror(tmp_path / "logs" / "failed-lock-updates.json")

    mirror.append({"id": 1, "lockId": "1001"})
    mirror.append({"id": 2, "lockId": "unknown"})

    assert [e["id"] for e in json.loads(mirror.path.read_text())] == [1, 2]


def test_drop_rewrites_without_resolved_entries(tmp_path):
    mirror = FailureLogMirror(tmp_path / "failed.json")
    for failure_id in (1, 2, 3):
        mirror.append({"id": failure_id})

    assert mirror.drop([1, 3]) == 2
    assert mirror.read() == [{"id": 2}]
    assert mirror.drop([42]) == 0
    assert mirror.drop([]) == 0


def test_unreadable_file_is_treated_as_empty(tmp_path):
    path = tmp_path / "failed.json"
    path.write_text("{not json")
    mirror = FailureLogMirror(path)

    assert mirror.read() == []
    mirror.append({"id": 5})
    assert mirror.read() == [{"id": 5}]
