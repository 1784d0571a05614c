"""Tests for tools.approval -- approval policy and session approvals."""

import pytest

from tools.approval import (
    ApprovalPolicy,
    approve_session,
    clear_session,
    is_session_approved,
)


class TestApprovalPolicy:
    def test_default_approves_everything(self):
        policy = ApprovalPolicy()
        assert policy(None, "fs__rm", "{}")

    def test_never(self):
        assert not ApprovalPolicy.from_config("never")(None, "fs__read", "{}")

    def test_allowlist_patterns(self):
        policy = ApprovalPolicy.from_config(["fs__read_*", "web__search"])
        assert policy.mode == "allowlist"
        assert policy.allows("fs__read_file")
        assert policy.allows("web__search")
        assert not policy.allows("fs__write_file")

    def test_dict_form(self):
        policy = ApprovalPolicy.from_config({"allowed_tools": ["git__*"]})
        assert policy.mode == "allowlist"
        assert policy.allows("git__status")

        explicit = ApprovalPolicy.from_config({"mode": "ALWAYS"})
        assert explicit.mode == "always"

    def test_none_is_default(self):
        assert ApprovalPolicy.from_config(None) == ApprovalPolicy()

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            ApprovalPolicy.from_config("sometimes")
        with pytest.raises(ValueError):
            ApprovalPolicy.from_config(42)


class TestSessionApprovals:
    def test_scoped_by_session(self):
        try:
            approve_session("s1", "fs__write")
            assert is_session_approved("s1", "fs__write")
            assert not is_session_approved("s2", "fs__write")
            assert not is_session_approved("s1", "fs__delete")
        finally:
            clear_session("s1")
        assert not is_session_approved("s1", "fs__write")

    def test_clear_unknown_session(self):
        clear_session("never-seen")
