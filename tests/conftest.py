"""Shared test fixtures for nightshift tests."""

import shutil
import tempfile
from pathlib import Path

import pytest

from nightshift.config import PROMPT_STAGES, CodeAgentConfig, Config, ensure_nightshift_dirs
from nightshift.models import Task


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def base_dir(temp_dir, monkeypatch):
    """A night-shift base directory, selected through NIGHTSHIFT_HOME."""
    monkeypatch.setenv("NIGHTSHIFT_HOME", str(temp_dir))
    ensure_nightshift_dirs(temp_dir)
    return temp_dir


@pytest.fixture
def write_config(base_dir):
    """Write nightshift.yaml into the base directory."""

    def _write(content: str) -> Path:
        path = base_dir / "nightshift.yaml"
        path.write_text(content)
        return path

    return _write


@pytest.fixture
def prompt_dir(temp_dir):
    """Minimal stage prompt templates under <temp_dir>/prompts."""
    prompts = temp_dir / "prompts"
    prompts.mkdir(parents=True, exist_ok=True)
    for stage in PROMPT_STAGES:
        (prompts / f"{stage}.md").write_text(
            f"{stage} stage for {{{{category}}}}. Handoff: {{{{handoff_file}}}}. "
            f"Error: {{{{verify_error}}}}\n"
        )
    return prompts


@pytest.fixture
def code_agent_config():
    return CodeAgentConfig(
        repo_url="git@gitlab.com:team/repo.git",
        confluence_page_id="123456",
        category_schedule={day: ["tests"] for day in (
            "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
        )},
        reviewer="jsmith",
        variables={"project_name": "MyApp"},
    )


@pytest.fixture
def config(base_dir):
    return Config(config_dir=base_dir)


@pytest.fixture
def make_task():
    """Factory for Task objects with sensible defaults."""
    counter = {"n": 0}

    def _make(**overrides) -> Task:
        counter["n"] += 1
        fields = {
            "id": f"ns-{counter['n']:08x}",
            "name": f"task-{counter['n']}",
            "origin": "one-off",
            "prompt": "Summarize the repo",
            "timeout": "30m",
        }
        fields.update(overrides)
        return Task(**fields)

    return _make
