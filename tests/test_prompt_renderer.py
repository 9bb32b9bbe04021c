"""Tests for ``{{var}}`` template rendering."""

from datetime import datetime

import pytest

from nightshift.prompt_renderer import (
    INJECTION_MITIGATION_PREAMBLE,
    load_bead_prompt,
    render_template,
)

NOW = datetime(2026, 10, 17, 6, 5, 9)


class TestRenderTemplate:
    def test_substitutes_variables(self):
        assert render_template("Fix {{category}} in {{repo}}", {"category": "docs", "repo": "x"}) == "Fix docs in x"

    def test_date_builtins(self):
        out = render_template("{{date}} {{datetime}} {{time}} {{year}}/{{month}}/{{day}}", now=NOW)
        assert out == "2026-10-17 2026-10-17_06-05-09 06-05-09 2026/10/17"

    def test_explicit_variables_override_builtins(self):
        assert render_template("{{date}}", {"date": "today"}, now=NOW) == "today"

    def test_unknown_placeholder_left_alone(self):
        assert render_template("{{missing}} and {{date}}", now=NOW) == "{{missing}} and 2026-10-17"

    @pytest.mark.parametrize("text", ["$HOME", "${name}", "{single}", "50% $$ off", "{{ spaced }}"])
    def test_other_syntax_untouched(self, text):
        assert render_template(text, {"name": "x", "HOME": "y", "spaced": "z"}) == text

    def test_values_not_rendered_recursively(self):
        assert render_template("{{a}}", {"a": "{{b}}", "b": "no"}) == "{{b}}"


class TestLoadBeadPrompt:
    def test_relative_path_and_preamble(self, temp_dir):
        (temp_dir / "prompts").mkdir()
        (temp_dir / "prompts" / "analyze.md").write_text("Look at {{category}}")

        prompt = load_bead_prompt("./prompts/analyze.md", {"category": "tests"}, temp_dir)

        assert prompt.startswith(INJECTION_MITIGATION_PREAMBLE)
        assert prompt.endswith("\n---\n\nLook at tests")

    def test_absolute_path(self, temp_dir):
        path = temp_dir / "verify.md"
        path.write_text("verify")
        assert load_bead_prompt(path, {}, "/nonexistent").endswith("verify")

    def test_missing_template_raises(self, temp_dir):
        with pytest.raises(OSError):
            load_bead_prompt("nope.md", {}, temp_dir)
