"""Tests for pipeline stage invocation and its environment isolation."""

import json
from unittest.mock import patch

from nightshift.bead_runner import build_bead_args, build_bead_env, run_bead
from nightshift.process import SpawnResult


def spawned(stdout="", exit_code=0, timed_out=False):
    return SpawnResult(stdout=stdout, stderr="", exit_code=exit_code, timed_out=timed_out)


class TestBuildBeadEnv:
    def test_allow_list_only(self, monkeypatch):
        monkeypatch.setenv("HOME", "/home/me")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "aws")
        monkeypatch.setenv("GITLAB_TOKEN", "ambient")

        env = build_bead_env("analyze", None)
        assert env["HOME"] == "/home/me"
        assert "AWS_SECRET_ACCESS_KEY" not in env
        assert "GITLAB_TOKEN" not in env

    def test_token_only_for_mr(self):
        for bead in ("analyze", "implement", "verify", "log"):
            assert "GITLAB_TOKEN" not in build_bead_env(bead, "glpat-x")
        assert build_bead_env("mr", "glpat-x")["GITLAB_TOKEN"] == "glpat-x"

    def test_mr_without_token(self):
        assert "GITLAB_TOKEN" not in build_bead_env("mr", None)


class TestBuildBeadArgs:
    def test_defaults(self):
        args = build_bead_args("Analyze it", "opus")
        assert args[:2] == ["-p", "Analyze it"]
        i = args.index("--allowedTools")
        assert args[i + 1:i + 4] == ["Bash", "Read", "Write"]
        assert args[args.index("--model") + 1] == "opus"
        assert "--max-budget-usd" not in args
        assert "--mcp-config" not in args

    def test_budget_and_mcp(self):
        args = build_bead_args("p", "sonnet", 8192, allowed_tools=["mcp__x"], mcp_config="/m.json")
        assert args[args.index("--max-budget-usd") + 1] == "8192"
        assert args[args.index("--mcp-config") + 1] == "/m.json"
        assert args[args.index("--allowedTools") + 1] == "mcp__x"


class TestRunBead:
    def test_parses_cost_and_duration(self, temp_dir):
        stdout = json.dumps({"result": "ok", "total_cost_usd": 1.25, "duration_ms": 3000})
        with patch("nightshift.bead_runner.spawn_with_timeout", return_value=spawned(stdout)):
            result = run_bead("analyze", "p", model="opus", cwd=temp_dir, timeout=60)

        assert result.exit_code == 0
        assert result.cost_usd == 1.25
        assert result.duration_ms == 3000
        assert result.timed_out is False

    def test_unparsable_output(self, temp_dir):
        with patch("nightshift.bead_runner.spawn_with_timeout", return_value=spawned("garbage")):
            result = run_bead("verify", "p", model="sonnet", cwd=temp_dir, timeout=60)
        assert result.cost_usd == 0.0
        assert result.stdout == "garbage"

    def test_timeout_reported(self, temp_dir):
        with patch("nightshift.bead_runner.spawn_with_timeout",
                   return_value=spawned(exit_code=-15, timed_out=True)):
            result = run_bead("implement", "p", model="sonnet", cwd=temp_dir, timeout=2)
        assert result.timed_out is True
        assert result.exit_code == -15
        assert result.duration_ms == 2000

    def test_start_failure_does_not_raise(self, temp_dir):
        with patch("nightshift.bead_runner.spawn_with_timeout", side_effect=FileNotFoundError("claude")):
            result = run_bead("mr", "p", model="sonnet", cwd=temp_dir, timeout=60, gitlab_token="t")
        assert result.exit_code == -1
        assert "claude" in result.stderr

    def test_credential_passed_in_env_not_args(self, temp_dir):
        with patch("nightshift.bead_runner.spawn_with_timeout", return_value=spawned("{}")) as mock_spawn:
            run_bead("mr", "open the MR", model="sonnet", cwd=temp_dir, timeout=60, gitlab_token="glpat-s")

        args, kwargs = mock_spawn.call_args
        assert kwargs["env"]["GITLAB_TOKEN"] == "glpat-s"
        assert not any("glpat-s" in a for a in args[1])
        assert kwargs["cwd"] == temp_dir
