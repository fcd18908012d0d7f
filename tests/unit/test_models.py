"""Tests for the session data model."""

from agentdeck.models import (
    DEFAULT_GROUP, Instance, Snapshot, Status, detect_tool, extract_group_path,
)
from agentdeck.tmux import TmuxSession


class TestDetectTool:

    def test_known_tools(self):
        assert detect_tool("claude --resume") == "claude"
        assert detect_tool("aider --model gpt-4o") == "aider"
        assert detect_tool("npx @google/gemini-cli") == "gemini"
        assert detect_tool("CODEX") == "codex"
        assert detect_tool("cursor-agent") == "cursor"

    def test_unknown_is_shell(self):
        assert detect_tool("") == "shell"
        assert detect_tool("htop") == "shell"


class TestExtractGroupPath:

    def test_parent_directory_name(self):
        assert extract_group_path("/home/me/work/api") == "work"

    def test_trailing_slash(self):
        assert extract_group_path("/home/me/work/api/") == "work"

    def test_top_level_falls_back(self):
        assert extract_group_path("/api") == DEFAULT_GROUP
        assert extract_group_path("") == DEFAULT_GROUP


class TestStatus:

    def test_parse_values(self):
        assert Status.parse("running") is Status.RUNNING
        assert Status.parse("WAITING") is Status.WAITING

    def test_parse_unknown_defaults_to_idle(self):
        assert Status.parse("active?") is Status.IDLE
        assert Status.parse(None) is Status.IDLE


class TestInstance:

    def test_defaults(self):
        inst = Instance(title="api", project_path="/src/work/api")
        assert inst.group_path == "work"
        assert inst.status is Status.IDLE
        assert inst.tool == "shell"
        assert inst.tmux_session is None
        assert inst.tmux_name == ""
        assert inst.created_at.tzinfo is not None

    def test_ids_are_unique(self):
        ids = {Instance(title="x", project_path="/x").id for _ in range(100)}
        assert len(ids) == 100

    def test_string_status_coerced(self):
        assert Instance(title="x", project_path="/x", status="waiting").status is Status.WAITING

    def test_bind_and_unbind(self):
        inst = Instance(title="x", project_path="/x")
        inst.bind(TmuxSession(name="agentdeck_x"))
        assert inst.is_bound and inst.tmux_name == "agentdeck_x"
        inst.unbind()
        assert not inst.is_bound and inst.tmux_name == ""


def test_snapshot_empty():
    assert Snapshot().is_empty()
    assert not Snapshot(instances=[Instance(title="x", project_path="/x")]).is_empty()
