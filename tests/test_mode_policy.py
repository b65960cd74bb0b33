"""Tests for chatbridge.engine.mode_policy: the mode x tool decision table."""

import pytest

from chatbridge.engine import mode_policy
from chatbridge.engine.mode_policy import Decision, ToolClass, classify, decide
from chatbridge.engine.models import PermissionMode


# ── classification ──


class TestClassify:
    @pytest.mark.parametrize("tool", ["Write", "Edit", "MultiEdit", "NotebookEdit"])
    def test_edit_tools(self, tool):
        assert classify(tool) is ToolClass.EDIT
        assert mode_policy.is_edit_tool(tool)
        assert mode_policy.is_destructive(tool)

    @pytest.mark.parametrize("tool", ["Bash", "TodoWrite"])
    def test_other_destructive_tools(self, tool):
        assert classify(tool) is ToolClass.DESTRUCTIVE
        assert not mode_policy.is_edit_tool(tool)
        assert mode_policy.is_destructive(tool)

    @pytest.mark.parametrize("tool", ["Read", "Grep", "Glob", "WebFetch", "SomeNewTool"])
    def test_unknown_and_read_tools_are_safe(self, tool):
        assert classify(tool) is ToolClass.SAFE
        assert not mode_policy.is_destructive(tool)


# ── decision table ──


class TestDecide:
    @pytest.mark.parametrize("mode", list(PermissionMode))
    def test_read_only_tools_always_allowed(self, mode):
        assert decide(mode, "Read") is Decision.ALLOW

    @pytest.mark.parametrize("tool", ["Write", "Edit", "Bash", "TodoWrite"])
    def test_bypass_allows_everything(self, tool):
        assert decide(PermissionMode.BYPASS, tool) is Decision.ALLOW

    @pytest.mark.parametrize("tool", ["Write", "Edit", "Bash", "TodoWrite"])
    def test_plan_denies_destructive(self, tool):
        assert decide(PermissionMode.PLAN, tool) is Decision.DENY

    @pytest.mark.parametrize("tool", ["Write", "Edit", "Bash"])
    def test_dont_ask_denies_destructive(self, tool):
        assert decide(PermissionMode.DONT_ASK, tool) is Decision.DENY

    @pytest.mark.parametrize("tool", ["Write", "Edit", "Bash", "TodoWrite"])
    def test_default_asks_for_destructive(self, tool):
        assert decide(PermissionMode.DEFAULT, tool) is Decision.ASK

    def test_accept_edits_allows_edits_but_asks_for_shell(self):
        assert decide(PermissionMode.ACCEPT_EDITS, "Write") is Decision.ALLOW
        assert decide(PermissionMode.ACCEPT_EDITS, "Edit") is Decision.ALLOW
        assert decide(PermissionMode.ACCEPT_EDITS, "Bash") is Decision.ASK

    def test_table_covers_every_mode_and_class(self):
        for mode in PermissionMode:
            assert set(mode_policy.POLICY[mode]) == set(ToolClass)


class TestDenyReason:
    def test_plan_reason(self):
        assert "plan mode" in mode_policy.deny_reason(PermissionMode.PLAN, "Write")

    def test_dont_ask_reason(self):
        assert "dontAsk" in mode_policy.deny_reason(PermissionMode.DONT_ASK, "Bash")
