"""Tests for session.py: SessionStore, Turn parsing."""

import json

import pytest

from session import PersistenceError, SessionStore, ToolCall, Turn


def _turn(role="user", content="hi", ts=1000):
    return Turn(role=role, content=content, timestamp=ts)


class TestAppendAndLoad:
    def test_missing_session_loads_empty(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        assert store.load("nobody") == []

    def test_append_then_load_preserves_order(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("s1", _turn("user", "hello", 1))
        store.append("s1", _turn("assistant", "hi there", 2))
        store.append("s1", _turn("user", "bye", 3))
        assert store.load("s1") == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
            {"role": "user", "content": "bye"},
        ]

    def test_one_line_per_turn(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("s1", _turn(content="line one\nline two"))
        store.append("s1", _turn("assistant", "ok"))
        lines = store.path("s1").read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["content"] == "line one\nline two"

    def test_persisted_fields(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("s1", _turn(ts=12345))
        record = json.loads(store.path("s1").read_text())
        assert record == {"role": "user", "content": "hi", "timestamp": 12345}

    def test_tool_calls_round_trip(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        turn = Turn(role="assistant", content="done", timestamp=5,
                    tool_calls=[ToolCall(name="read", arguments='{"p": 1}', result="x")])
        store.append("s1", turn)
        record = json.loads(store.path("s1").read_text())
        assert record["toolCalls"] == [{"name": "read", "arguments": '{"p": 1}', "result": "x"}]
        assert store.turns("s1")[0].tool_calls[0].name == "read"

    def test_sessions_are_isolated(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("a", _turn(content="for a"))
        store.append("b", _turn(content="for b"))
        assert store.load("a") == [{"role": "user", "content": "for a"}]
        assert store.load("b") == [{"role": "user", "content": "for b"}]

    def test_unicode_content(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("s1", _turn(content="Grüße 👋"))
        assert store.load("s1")[0]["content"] == "Grüße 👋"


class TestSanitizedIds:
    def test_unsafe_characters_replaced(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        assert store.path("../etc/passwd").name == "___etc_passwd.jsonl"
        assert store.path("../etc/passwd").parent == tmp_sessions

    def test_colliding_ids_share_a_log(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("a/b", _turn(content="first"))
        store.append("a:b", _turn(content="second"))
        assert [m["content"] for m in store.load("a_b")] == ["first", "second"]


class TestCorruptLines:
    def test_corrupt_line_skipped(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("s1", _turn(content="good one"))
        with open(store.path("s1"), "a") as f:
            f.write("{not json\n")
            f.write(json.dumps({"role": "robot", "content": "x", "timestamp": 1}) + "\n")
            f.write("\n")
        store.append("s1", _turn("assistant", "good two"))
        assert [m["content"] for m in store.load("s1")] == ["good one", "good two"]

    def test_from_dict_rejects_bad_shapes(self):
        with pytest.raises(ValueError):
            Turn.from_dict([])
        with pytest.raises(ValueError):
            Turn.from_dict({"role": "user", "content": 5, "timestamp": 1})
        with pytest.raises(ValueError):
            Turn.from_dict({"role": "user", "content": "x", "timestamp": "soon"})


class TestClearAndCount:
    def test_clear_removes_history(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("s1", _turn())
        store.clear("s1")
        assert store.load("s1") == []
        assert not store.path("s1").exists()

    def test_clear_missing_is_noop(self, tmp_sessions):
        SessionStore(tmp_sessions).clear("never-existed")

    def test_clear_then_append_starts_fresh(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        store.append("s1", _turn(content="old"))
        store.clear("s1")
        store.append("s1", _turn(content="new"))
        assert store.load("s1") == [{"role": "user", "content": "new"}]

    def test_count(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        assert store.count() == 0
        store.append("a", _turn())
        store.append("b", _turn())
        store.append("a", _turn())
        (tmp_sessions / "notes.txt").write_text("ignored")
        assert store.count() == 2


class TestPersistenceErrors:
    def test_append_failure_raises(self, tmp_sessions):
        store = SessionStore(tmp_sessions)
        # A directory where the log file should be makes open() fail
        store.path("s1").mkdir()
        with pytest.raises(PersistenceError):
            store.append("s1", _turn())
