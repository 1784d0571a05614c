"""Tests for agent.session_persister -- session log load/save."""

import json

import pytest

from agent.session_persister import SessionLoadError, SessionPersister


@pytest.fixture
def session_path(tmp_path):
    return tmp_path / "sessions" / "chat.json"


@pytest.fixture
def persister(session_path):
    return SessionPersister(path=session_path, model="openai/gpt-4o", session_id="test_session_001")


class TestLoad:
    def test_missing_file_is_new_session(self, persister):
        assert persister.load() == []

    def test_round_trip(self, persister, session_path):
        messages = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": None, "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "fs__ls", "arguments": "{}"}},
            ]},
            {"role": "tool", "tool_call_id": "c1", "content": "[]"},
            {"role": "assistant", "content": "empty"},
        ]
        persister.save(messages)
        reloaded = SessionPersister(path=session_path).load()
        assert reloaded[0] == {"role": "user", "content": "hi"}
        assert "content" not in reloaded[1]
        assert reloaded[1]["tool_calls"][0]["id"] == "c1"
        assert reloaded[2]["tool_call_id"] == "c1"

    def test_plain_list_accepted(self, session_path):
        session_path.parent.mkdir(parents=True)
        session_path.write_text(json.dumps([{"role": "user", "content": "x"}, {"bogus": 1}]))
        assert SessionPersister(path=session_path).load() == [{"role": "user", "content": "x"}]

    def test_session_id_restored(self, persister, session_path):
        persister.save([])
        fresh = SessionPersister(path=session_path)
        fresh.load()
        assert fresh.session_id == "test_session_001"

    def test_corrupt_file(self, session_path):
        session_path.parent.mkdir(parents=True)
        session_path.write_text("{not json")
        with pytest.raises(SessionLoadError):
            SessionPersister(path=session_path).load()

    def test_wrong_shape(self, session_path):
        session_path.parent.mkdir(parents=True)
        session_path.write_text('"just a string"')
        with pytest.raises(SessionLoadError):
            SessionPersister(path=session_path).load()


class TestSave:
    def test_payload_metadata(self, persister, session_path):
        persister.save([{"role": "user", "content": "hi", "extra": "dropped"}])
        data = json.loads(session_path.read_text())
        assert data["session_id"] == "test_session_001"
        assert data["model"] == "openai/gpt-4o"
        assert data["message_count"] == 1
        assert data["messages"] == [{"role": "user", "content": "hi"}]

    def test_no_temp_files_left(self, persister, session_path):
        persister.save([{"role": "user", "content": "a"}])
        persister.save([{"role": "user", "content": "b"}])
        assert [p.name for p in session_path.parent.iterdir()] == ["chat.json"]

    def test_save_failure_is_not_raised(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        SessionPersister(path=blocker / "chat.json").save([{"role": "user", "content": "a"}])
