"""
Unit tests for buffer writers.

Run with: pytest tests/unit/test_buffer_writer.py -v
"""

import json
import threading

import pytest

from acctsync.sources.base_source import TeamBuffer, UserBuffer
from acctsync.store.buffer_writer import InMemoryBufferWriter, JsonFileBufferWriter


def teams(*ids):
    return [TeamBuffer(source_team_id=i, name=f"Team {i}", source_inst_id="src-1") for i in ids]


def users(*ids):
    return [UserBuffer(source_user_id=i, username=f"user-{i}", source_inst_id="src-1") for i in ids]


class TestInMemoryBufferWriter:
    """Test suite for InMemoryBufferWriter class"""

    def test_write_and_read(self):
        """Test batches are stored per source instance"""
        writer = InMemoryBufferWriter()

        writer.write_teams("src-1", teams("a", "b"))
        writer.write_users("src-2", users("u1"))

        assert [t["source_team_id"] for t in writer.read_teams("src-1")] == ["a", "b"]
        assert writer.read_teams("src-2") == []
        assert writer.read_users("src-2")[0]["username"] == "user-u1"
        assert writer.write_count == 2

    def test_new_batch_replaces_old(self):
        """Test each scan replaces the staged rows of that source"""
        writer = InMemoryBufferWriter()

        writer.write_teams("src-1", teams("a", "b"))
        writer.write_teams("src-1", teams("c"))

        assert [t["source_team_id"] for t in writer.read_teams("src-1")] == ["c"]

    def test_transaction_commits_on_success(self):
        """Test writes inside a transaction apply on clean exit"""
        writer = InMemoryBufferWriter()

        with writer.transaction():
            writer.write_teams("src-1", teams("a"))
            assert writer.read_teams("src-1") == []

        assert len(writer.read_teams("src-1")) == 1

    def test_transaction_rolls_back_on_error(self):
        """Test writes are discarded when the block raises"""
        writer = InMemoryBufferWriter()
        writer.write_teams("src-1", teams("old"))

        with pytest.raises(RuntimeError):
            with writer.transaction():
                writer.write_teams("src-1", teams("new"))
                raise RuntimeError("fetch failed halfway")

        assert [t["source_team_id"] for t in writer.read_teams("src-1")] == ["old"]
        assert writer.write_count == 1

    def test_nested_transaction_joins_outer(self):
        """Test an inner transaction commits with the outer one"""
        writer = InMemoryBufferWriter()

        with writer.transaction():
            with writer.transaction():
                writer.write_users("src-1", users("u1"))
            assert writer.read_users("src-1") == []

        assert len(writer.read_users("src-1")) == 1

    def test_transactions_are_per_thread(self):
        """Test another thread's writes are not held by this transaction"""
        writer = InMemoryBufferWriter()

        with writer.transaction():
            thread = threading.Thread(target=writer.write_users, args=("src-1", users("u1")))
            thread.start()
            thread.join(timeout=5)
            assert len(writer.read_users("src-1")) == 1

    def test_write_count_across_threads(self):
        """Test commits from many threads are all counted"""
        writer = InMemoryBufferWriter()
        barrier = threading.Barrier(8)

        def commit(n):
            barrier.wait()
            for _ in range(50):
                with writer.transaction():
                    writer.write_teams(f"src-{n}", teams("a"))

        threads = [threading.Thread(target=commit, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert writer.write_count == 400


class TestJsonFileBufferWriter:
    """Test suite for JsonFileBufferWriter class"""

    def test_writes_json_per_source(self, tmp_path):
        """Test files land in <dir>/<source>/<kind>.json"""
        writer = JsonFileBufferWriter(tmp_path)

        writer.write_teams("src-1", teams("a", "b"))

        path = tmp_path / "src-1" / "teams.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert [row["source_team_id"] for row in data] == ["a", "b"]
        assert writer.read_teams("src-1") == data

    def test_read_missing_returns_empty(self, tmp_path):
        """Test reading a never-written buffer"""
        assert JsonFileBufferWriter(tmp_path).read_users("src-9") == []

    def test_rollback_leaves_no_file(self, tmp_path):
        """Test a failed transaction writes nothing to disk"""
        writer = JsonFileBufferWriter(tmp_path)

        with pytest.raises(ValueError):
            with writer.transaction():
                writer.write_users("src-1", users("u1"))
                raise ValueError("boom")

        assert not (tmp_path / "src-1").exists()
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.parametrize("source_id", ["../outside", "..", "a/b"])
    def test_source_id_cannot_leave_output_dir(self, tmp_path, source_id):
        """Test ids that resolve outside the output directory are refused"""
        output_dir = tmp_path / "buffer"
        writer = JsonFileBufferWriter(output_dir)

        with pytest.raises(ValueError, match="escapes"):
            writer.write_teams(source_id, teams("a"))

        assert list(tmp_path.iterdir()) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
