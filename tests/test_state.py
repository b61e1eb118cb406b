"""
Tests for file locking and atomic JSON persistence.
"""

import json
import threading

import pytest

from runnerinstall.state import atomic_write_json, file_lock, read_json


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / "state" / "metrics.json"


class TestAtomicWrite:
    def test_write_and_read(self, data_file):
        atomic_write_json(data_file, {"successCount": 3, "lastRun": None})

        assert read_json(data_file) == {"successCount": 3, "lastRun": None}

    def test_replaces_existing(self, data_file):
        atomic_write_json(data_file, {"a": 1})
        atomic_write_json(data_file, {"b": 2})

        assert read_json(data_file) == {"b": 2}

    def test_no_temp_files_left(self, data_file):
        atomic_write_json(data_file, {"a": 1})
        assert [p.name for p in data_file.parent.iterdir()] == ["metrics.json"]

    def test_failed_write_keeps_previous_content(self, data_file):
        atomic_write_json(data_file, {"a": 1})

        with pytest.raises(TypeError):
            atomic_write_json(data_file, {1j: "complex keys are not JSON"})

        assert read_json(data_file) == {"a": 1}
        assert [p.name for p in data_file.parent.iterdir()] == ["metrics.json"]


class TestReadJson:
    def test_missing(self, tmp_path):
        assert read_json(tmp_path / "missing.json") is None

    def test_corrupt(self, tmp_path):
        path = tmp_path / "corrupt.json"
        path.write_text('{"successCount": ')
        assert read_json(path) is None

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text(json.dumps([1, 2, 3]))
        assert read_json(path) is None


class TestFileLock:
    def test_creates_sidecar_lock(self, data_file):
        with file_lock(data_file):
            assert data_file.with_suffix(".json.lock").exists()

    def test_shared_locks_coexist(self, data_file):
        with file_lock(data_file, exclusive=False):
            with file_lock(data_file, exclusive=False):
                pass

    def test_concurrent_updates_are_serialized(self, data_file):
        atomic_write_json(data_file, {"count": 0})

        def increment():
            for _ in range(20):
                with file_lock(data_file):
                    data = read_json(data_file)
                    data["count"] += 1
                    atomic_write_json(data_file, data)

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert read_json(data_file) == {"count": 80}
