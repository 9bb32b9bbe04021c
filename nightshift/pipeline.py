"""Code-agent pipeline: analyze -> implement -> verify -> mr.

State machine per category:

    Analyze -> NO_IMPROVEMENT                -> next category
            -> Implement -> Verify -> pass   -> Publish (MR_CREATED)
                                   -> fail   -> reset, retry Implement
                                                (MAX_IMPLEMENT_RETRIES times)
                                             -> exhausted: reset, next category

Categories are visited primary first, then FALLBACK_ORDER without the
primary. Stages exchange data through JSON handoff files in a temp
directory; a missing or unreadable handoff file is read as the negative
outcome. Stage failures never raise out of this module.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Literal

from .bead_runner import BeadName, BeadResult, run_bead
from .config import CodeAgentConfig
from .git_utils import reset_repo
from .process import ProcessRegistry
from .prompt_renderer import load_bead_prompt
from .scheduler import resolve_category

logger = logging.getLogger(__name__)

FALLBACK_ORDER = ("tests", "refactoring", "docs", "security", "performance")

# 1 initial attempt + 2 retries
MAX_IMPLEMENT_RETRIES = 2

CATEGORY_GUIDANCE = {
    "tests": (
        "Missing unit test coverage first, then improve existing test quality "
        "(better assertions, edge cases, flakiness reduction)"
    ),
    "refactoring": (
        "Broad scope: code duplication, complexity reduction, naming improvements, "
        "dead code removal, pattern consistency"
    ),
    "docs": (
        "Code-level documentation (comments, Scaladoc) first, then project-level docs "
        "(README, markdown files) if no code gaps found"
    ),
    "security": (
        "Active vulnerabilities first (OWASP-style: injection, auth bypass, insecure "
        "defaults, data exposure), then defensive hardening (input validation, secure "
        "error handling, safe logging)"
    ),
    "performance": (
        "Identify and address performance bottlenecks: inefficient algorithms, "
        "unnecessary allocations, suboptimal data structures, missing caching opportunities"
    ),
}

MR_URL_RE = re.compile(r"https?://\S+/merge_requests/\d+")

ANALYSIS_FILE = "analysis.json"
VERIFY_FILE = "verify.json"

RETRIES_EXHAUSTED_REASON = "verify failed after retries"

Outcome = Literal["MR_CREATED", "NO_IMPROVEMENT", "ABANDONED"]


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineContext:
    """Everything a pipeline run needs. Never mutated during the run."""

    config: CodeAgentConfig
    config_dir: Path
    repo_dir: Path
    handoff_dir: Path
    timeout: float
    gitlab_token: str | None = None
    registry: ProcessRegistry | None = None
    log: logging.Logger = logger


@dataclass(frozen=True)
class AnalysisCandidate:
    rank: int = 0
    files: list[str] = field(default_factory=list)
    description: str = ""
    rationale: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "AnalysisCandidate | None":
        if not isinstance(data, dict):
            return None
        files = data.get("files") or []
        return cls(
            rank=int(data.get("rank") or 0),
            files=[str(f) for f in files] if isinstance(files, list) else [],
            description=str(data.get("description") or ""),
            rationale=str(data.get("rationale") or ""),
        )


@dataclass(frozen=True)
class AnalysisResult:
    """Contents of the analysis handoff file."""

    result: str
    category_used: str
    reason: str | None = None
    candidates: list[AnalysisCandidate] = field(default_factory=list)
    selected: AnalysisCandidate | None = None

    @property
    def found_improvement(self) -> bool:
        return self.result == "IMPROVEMENT_FOUND"

    @classmethod
    def from_dict(cls, data: dict[str, Any], category: str) -> "AnalysisResult":
        candidates = [
            c for c in (AnalysisCandidate.from_dict(raw) for raw in data.get("candidates") or [])
            if c is not None
        ]
        reason = data.get("reason")
        return cls(
            result=str(data.get("result") or "NO_IMPROVEMENT"),
            category_used=str(data.get("categoryUsed") or category),
            reason=str(reason) if reason is not None else None,
            candidates=candidates,
            selected=AnalysisCandidate.from_dict(data.get("selected")),
        )


@dataclass(frozen=True)
class VerifyResult:
    passed: bool
    error_details: str = ""


@dataclass
class CodeAgentRunResult:
    outcome: Outcome
    category_used: str
    is_fallback: bool = False
    mr_url: str | None = None
    reason: str | None = None
    summary: str | None = None
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_template_vars(
    config: CodeAgentConfig,
    category: str,
    guidance: str,
    handoff_file: Path,
) -> dict[str, str]:
    """Template variables shared by all stages.

    Built from an explicit allow-list plus the user's static variables,
    never from the process environment.
    """
    return {
        "category": category,
        "category_guidance": guidance,
        "repo_url": config.repo_url,
        "handoff_file": str(handoff_file),
        "allowed_commands": ", ".join(config.allowed_commands),
        "reviewer": config.reviewer or "",
        **config.variables,
    }


def _invoke(
    ctx: PipelineContext,
    bead: BeadName,
    variables: dict[str, str],
    *,
    with_credential: bool = False,
) -> BeadResult:
    try:
        prompt = load_bead_prompt(ctx.config.prompts[bead], variables, ctx.config_dir)
    except OSError as e:
        ctx.log.error("Cannot load %s prompt template: %s", bead, e)
        return BeadResult(
            exit_code=-1,
            stdout="",
            stderr=f"Cannot load prompt template: {e}",
            duration_ms=0,
            cost_usd=0.0,
            timed_out=False,
        )

    return run_bead(
        bead,
        prompt,
        model=ctx.config.model_for(bead),
        cwd=ctx.repo_dir,
        timeout=ctx.timeout,
        gitlab_token=ctx.gitlab_token if with_credential else None,
        max_budget=ctx.config.max_tokens,
        registry=ctx.registry,
    )


def _seed_handoff(path: Path, payload: dict[str, Any]) -> None:
    # The stub is what gets read back if the stage never writes the file
    path.write_text(json.dumps(payload), encoding="utf-8")


def _read_handoff(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def extract_mr_url(stdout: str) -> str | None:
    """Find the merge request URL in the publish stage output.

    Looks in the JSON ``result`` field, or in raw stdout if it is not JSON.
    """
    if not stdout:
        return None
    try:
        parsed = json.loads(stdout)
    except json.JSONDecodeError:
        text = stdout
    else:
        text = str(parsed.get("result") or "") if isinstance(parsed, dict) else ""
    match = MR_URL_RE.search(text)
    return match.group(0) if match else None


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def run_analyze(
    ctx: PipelineContext, category: str, guidance: str
) -> tuple[AnalysisResult, BeadResult]:
    handoff = ctx.handoff_dir / ANALYSIS_FILE
    _seed_handoff(handoff, {"result": "NO_IMPROVEMENT", "reason": "pending"})

    bead = _invoke(ctx, "analyze", build_template_vars(ctx.config, category, guidance, handoff))

    data = _read_handoff(handoff)
    if data is None:
        analysis = AnalysisResult(
            result="NO_IMPROVEMENT",
            category_used=category,
            reason="Failed to read analysis handoff file",
        )
    else:
        analysis = AnalysisResult.from_dict(data, category)
    return analysis, bead


def run_implement(
    ctx: PipelineContext, category: str, guidance: str, verify_error: str
) -> BeadResult:
    analysis_file = ctx.handoff_dir / ANALYSIS_FILE
    variables = {
        **build_template_vars(ctx.config, category, guidance, analysis_file),
        "analysis_file": str(analysis_file),
        "verify_error": verify_error,
    }
    return _invoke(ctx, "implement", variables)


def run_verify(
    ctx: PipelineContext, category: str, guidance: str
) -> tuple[VerifyResult, BeadResult]:
    handoff = ctx.handoff_dir / VERIFY_FILE
    _seed_handoff(handoff, {"passed": False, "error_details": "pending"})

    bead = _invoke(ctx, "verify", build_template_vars(ctx.config, category, guidance, handoff))

    data = _read_handoff(handoff)
    if data is None:
        verify = VerifyResult(passed=False, error_details="Failed to read verify handoff file")
    else:
        verify = VerifyResult(
            passed=data.get("passed") is True,
            error_details=str(data.get("error_details") or ""),
        )
    return verify, bead


def run_publish(
    ctx: PipelineContext,
    category: str,
    guidance: str,
    category_label: str,
    analysis: AnalysisResult,
) -> tuple[str | None, BeadResult]:
    """Open the merge request. The only stage that receives the credential."""
    analysis_file = ctx.handoff_dir / ANALYSIS_FILE
    short_description = f"{category} improvement"
    if analysis.selected and analysis.selected.description:
        short_description = analysis.selected.description[:80]

    variables = {
        **build_template_vars(ctx.config, category, guidance, analysis_file),
        "analysis_file": str(analysis_file),
        "short_description": short_description,
        "category": category_label,
    }
    bead = _invoke(ctx, "mr", variables, with_credential=True)
    return extract_mr_url(bead.stdout), bead


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def categories_to_try(primary: str) -> list[str]:
    return [primary] + [c for c in FALLBACK_ORDER if c != primary]


def run_code_agent_pipeline(
    ctx: PipelineContext,
    primary_category: str | None = None,
    today: date | None = None,
) -> CodeAgentRunResult:
    """Run the pipeline over the primary category and its fallbacks.

    Args:
        ctx: Pipeline context
        primary_category: Category to start with; resolved from the weekday
            schedule when None
        today: Date used for schedule resolution (defaults to today)

    Returns:
        CodeAgentRunResult with costs and durations of every stage summed
    """
    primary = primary_category or resolve_category(ctx.config.category_schedule, today)
    if not primary:
        return CodeAgentRunResult(
            outcome="NO_IMPROVEMENT",
            category_used="none",
            reason="No category scheduled for today",
        )

    total_cost = 0.0
    total_duration = 0
    reasons: dict[str, str] = {}

    def account(bead: BeadResult) -> None:
        nonlocal total_cost, total_duration
        total_cost += bead.cost_usd
        total_duration += bead.duration_ms

    ordered = categories_to_try(primary)
    for index, category in enumerate(ordered):
        is_fallback = index > 0
        guidance = CATEGORY_GUIDANCE.get(category, category)

        ctx.log.info(
            "Analyzing category %s (%d/%d%s)",
            category, index + 1, len(ordered), ", fallback" if is_fallback else "",
        )
        analysis, bead = run_analyze(ctx, category, guidance)
        account(bead)

        if not analysis.found_improvement:
            reasons[category] = analysis.reason or "no improvement found"
            ctx.log.info("Category %s: no improvement (%s)", category, reasons[category])
            continue

        ctx.log.info(
            "Improvement found for %s: %s",
            category, analysis.selected.description if analysis.selected else "(no selection)",
        )

        passed = False
        verify_error = ""
        for attempt in range(MAX_IMPLEMENT_RETRIES + 1):
            if attempt > 0:
                ctx.log.info("Resetting checkout before implement retry %d", attempt)
                reset_repo(ctx.repo_dir)

            ctx.log.info("Implement attempt %d/%d", attempt + 1, MAX_IMPLEMENT_RETRIES + 1)
            account(run_implement(ctx, category, guidance, verify_error))

            verify, bead = run_verify(ctx, category, guidance)
            account(bead)
            if verify.passed:
                passed = True
                break

            verify_error = verify.error_details
            ctx.log.warning("Verify failed on attempt %d: %s", attempt + 1, verify_error[:200])

        if not passed:
            reset_repo(ctx.repo_dir)
            reasons[category] = RETRIES_EXHAUSTED_REASON
            ctx.log.warning("Category %s failed verify after all retries", category)
            continue

        label = f"{category} (fallback from {primary})" if is_fallback else category
        ctx.log.info("Publishing merge request for %s", label)
        mr_url, bead = run_publish(ctx, category, guidance, label, analysis)
        account(bead)

        return CodeAgentRunResult(
            outcome="MR_CREATED",
            mr_url=mr_url,
            category_used=label,
            is_fallback=is_fallback,
            total_cost_usd=total_cost,
            total_duration_ms=total_duration,
        )

    summary = "; ".join(f"{cat}: {reason}" for cat, reason in reasons.items())
    outcome: Outcome = (
        "ABANDONED" if RETRIES_EXHAUSTED_REASON in reasons.values() else "NO_IMPROVEMENT"
    )
    ctx.log.info("All categories exhausted (%s): %s", outcome, summary)

    return CodeAgentRunResult(
        outcome=outcome,
        category_used=primary,
        reason=f"All categories exhausted. {summary}",
        summary=summary,
        total_cost_usd=total_cost,
        total_duration_ms=total_duration,
    )
