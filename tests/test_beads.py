"""Tests for the bd CLI wrapper and task <-> bead mapping."""

import json
from unittest.mock import patch

import pytest

from nightshift.beads import (
    FAILED_LABEL,
    META_END,
    META_START,
    NIGHTSHIFT_LABEL,
    BeadsClient,
    from_bead,
    parse_bead_description,
    to_bead_description,
    to_bead_labels,
)
from nightshift.errors import BeadsError
from nightshift.process import SpawnResult


def spawned(stdout="", stderr="", exit_code=0, timed_out=False):
    return SpawnResult(stdout=stdout, stderr=stderr, exit_code=exit_code, timed_out=timed_out)


class TestBeadsClient:
    def test_create(self):
        with patch("nightshift.beads.spawn_with_timeout", return_value=spawned("bd-17\n")) as mock_spawn:
            bead_id = BeadsClient().create("digest", "desc", ["nightshift", "nightshift:one-off"])

        assert bead_id == "bd-17"
        command, args = mock_spawn.call_args[0]
        assert command == "bd"
        assert args == [
            "create", "digest", "--description", "desc",
            "--label", "nightshift", "--label", "nightshift:one-off",
        ]

    def test_create_empty_id(self):
        with patch("nightshift.beads.spawn_with_timeout", return_value=spawned("  \n")):
            with pytest.raises(BeadsError, match="empty ID"):
                BeadsClient().create("t", "d", [])

    def test_nonzero_exit(self):
        with patch("nightshift.beads.spawn_with_timeout", return_value=spawned(stderr="locked", exit_code=1)):
            with pytest.raises(BeadsError, match="locked") as exc_info:
                BeadsClient().close("bd-1")
        assert exc_info.value.command == "close"

    def test_update_flags(self):
        with patch("nightshift.beads.spawn_with_timeout", return_value=spawned()) as mock_spawn:
            BeadsClient().update("bd-1", claim=True, labels=[FAILED_LABEL])
        assert mock_spawn.call_args[0][1] == ["update", "bd-1", "--claim", "--label", FAILED_LABEL]

    def test_list_ready_json(self):
        beads = [{"id": "bd-1", "title": "a"}]
        with patch("nightshift.beads.spawn_with_timeout", return_value=spawned(json.dumps(beads))) as mock_spawn:
            assert BeadsClient().list_ready() == beads
        assert mock_spawn.call_args[0][1] == ["ready", "--label", NIGHTSHIFT_LABEL, "--json"]

    def test_invalid_json(self):
        with patch("nightshift.beads.spawn_with_timeout", return_value=spawned("not json")):
            with pytest.raises(BeadsError, match="parse"):
                BeadsClient().list_all()

    def test_timeout(self):
        with patch("nightshift.beads.spawn_with_timeout", return_value=spawned(timed_out=True, exit_code=-15)):
            with pytest.raises(BeadsError, match="timed out"):
                BeadsClient().get("bd-1")

    def test_missing_binary(self):
        with patch("nightshift.beads.spawn_with_timeout", side_effect=FileNotFoundError("bd")):
            with pytest.raises(BeadsError, match="Cannot run bd"):
                BeadsClient().list_all()
            assert BeadsClient().is_available() is False


# =============================================================================
# Mapping
# =============================================================================


class TestMapping:
    def test_labels(self, make_task):
        assert to_bead_labels(make_task()) == ["nightshift", "nightshift:one-off"]
        recurring = make_task(origin="recurring", recurring_name="digest")
        assert to_bead_labels(recurring) == ["nightshift", "nightshift:recurring:digest"]

    def test_description_layout(self, make_task):
        description = to_bead_description(make_task(prompt="Line one\nLine two", model="opus"))
        assert description.startswith(f"{META_START}\norigin: one-off\ntimeout: 30m\nmodel: opus\n{META_END}\n\n")
        assert description.endswith("Line one\nLine two")

    def test_description_round_trip(self, make_task):
        task = make_task(
            max_budget_usd=2.5, model="opus", allowed_tools=["Read", "Write"],
            output="inbox/x.md", mcp_config="/m.json", kind="code-agent",
            category="docs", notify=False,
        )
        meta = parse_bead_description(to_bead_description(task))

        assert meta["prompt"] == task.prompt
        assert meta["max_budget_usd"] == 2.5
        assert meta["allowed_tools"] == ["Read", "Write"]
        assert meta["kind"] == "code-agent"
        assert meta["notify"] is False

    def test_plain_description_is_prompt(self):
        assert parse_bead_description("Just do it") == {"prompt": "Just do it"}
        assert parse_bead_description("") == {"prompt": ""}

    def test_bad_budget_ignored(self):
        description = f"{META_START}\nmax_budget_usd: lots\n{META_END}\n\nprompt"
        assert "max_budget_usd" not in parse_bead_description(description)

    def test_from_bead_recurring(self):
        task = from_bead({
            "id": "bd-9",
            "title": "digest",
            "description": f"{META_START}\norigin: recurring\ntimeout: 15m\n{META_END}\n\nSummarize",
            "status": "open",
            "labels": ["nightshift", "nightshift:recurring:digest"],
            "created_at": "2026-10-17T02:00:00Z",
        })

        assert task.id == "bd-9"
        assert task.origin == "recurring"
        assert task.recurring_name == "digest"
        assert task.timeout == "15m"
        assert task.prompt == "Summarize"
        assert task.status == "pending"
        assert task.created_at == "2026-10-17T02:00:00Z"

    def test_from_bead_closed(self):
        task = from_bead({"id": "bd-1", "description": "x", "status": "closed"})
        assert task.status == "completed"
        assert task.name == "bd-1"
        assert task.origin == "one-off"
