"""Compile -> diagnose -> patch convergence loop.

Two passes share the same loop:

- ``correct_casting`` only allows type representation fixes, shows the
  model every prior failed attempt and lets it give up with ``reject``.
- ``correct_overall`` allows broader rewrites of the current candidate.

Both compile the initial script first (zero rounds when it already
compiles), then alternate model patches and recompilations until success or
until ``orchestrator.compiler_retry`` rounds are spent. The last candidate
and its diagnostics are returned either way.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from phaseforge.agents.application import FunctionController, FunctionSpec, ValidationIssue
from phaseforge.agents.function_agent import SystemMessageHistory
from phaseforge.compiler import annotate_diagnostics, filter_diagnostics, format_diagnostics
from phaseforge.context.agent_context import ConversateRequest
from phaseforge.core.exceptions import CorrectionError
from phaseforge.core.models import CompileDiagnostic, CompileResult, TelemetryEvent, TelemetryKind

logger = logging.getLogger("phaseforge.orchestrate.correct")

DEFAULT_CASTING_PROMPT = (
    "Fix only type representation mismatches (casts, assertions, nullable "
    "narrowing). Never change business logic or the declared function name. "
    "If casting alone cannot fix the errors, call `reject`."
)

DEFAULT_OVERALL_PROMPT = (
    "Rewrite the code so that it compiles. Keep the declared function name and "
    "return the complete code through `rewrite`."
)


class ReviseProps(BaseModel):
    review: str = Field(description="Review of the draft against the diagnostics.")
    final: Optional[str] = Field(
        default=None,
        description="Final code after review, or null when the draft needs no change.",
    )


class RewriteParams(BaseModel):
    think: str = Field(description="Analysis of the root cause of the diagnostics.")
    draft: str = Field(description="Complete corrected code.")
    revise: ReviseProps


class RejectParams(BaseModel):
    pass


def declares_function(script: str, name: str) -> bool:
    """Whether ``script`` declares a function called ``name``."""
    pattern = (
        r"(?:\bfunction\s*\*?\s*|\bdef\s+|\b(?:const|let|var)\s+)"
        + re.escape(name)
        + r"\b"
    )
    return re.search(pattern, script) is not None


@dataclass
class CorrectionProgrammer:
    """What a correction loop needs to know about its target."""

    source: str
    location: str
    function_name: str
    compile: Callable[[str], Awaitable[CompileResult]]
    declares: Callable[[str, str], bool] = declares_function
    annotate: bool = True
    comment: str = "//"


@dataclass
class CorrectionResult:
    success: bool
    script: str
    diagnostics: list[CompileDiagnostic] = field(default_factory=list)
    rounds: int = 0
    rejected: bool = False


def validate_empty_code(
    programmer: CorrectionProgrammer,
    params: RewriteParams,
    path: str = "$input",
) -> list[ValidationIssue]:
    """Reject candidates that are empty or lost the target function."""
    issues: list[ValidationIssue] = []
    for key, code in (("draft", params.draft), ("revise.final", params.revise.final)):
        if code is None:
            continue
        if not code.strip():
            issues.append(ValidationIssue(
                path=f"{path}.{key}",
                expected="non-empty code",
                value=code,
                description="The code is empty. Write the complete implementation.",
            ))
        elif not programmer.declares(code, programmer.function_name):
            issues.append(ValidationIssue(
                path=f"{path}.{key}",
                expected=f"code declaring function {programmer.function_name}",
                value=code,
                description=(
                    f"The code must declare the function `{programmer.function_name}` "
                    "with exactly that name. Never rename it."
                ),
            ))
    return issues


async def _compile(programmer: CorrectionProgrammer, script: str) -> CompileResult:
    return filter_diagnostics(await programmer.compile(script), programmer.location)


async def _report_validate(ctx: Any, programmer: CorrectionProgrammer, result: CompileResult, round: int) -> None:
    await ctx.dispatch(TelemetryEvent(
        kind=TelemetryKind.COMPILE_VALIDATE,
        source=programmer.source,
        payload={
            "location": programmer.location,
            "round": round,
            "success": result.success,
            "diagnostics": [d.model_dump() for d in result.diagnostics],
        },
    ))


def _attempt_history(
    programmer: CorrectionProgrammer,
    index: int,
    script: str,
    diagnostics: list[CompileDiagnostic],
) -> SystemMessageHistory:
    body = (
        annotate_diagnostics(script, diagnostics, programmer.comment)
        if programmer.annotate else script
    )
    return SystemMessageHistory(
        f"## Attempt {index}: {programmer.location}\n\n"
        f"```\n{body}\n```\n\n"
        f"### Diagnostics\n\n{format_diagnostics(diagnostics)}"
    )


def _controller(
    programmer: CorrectionProgrammer,
    pointer: dict[str, Any],
    allow_reject: bool,
) -> FunctionController:
    def rewrite(params: RewriteParams) -> None:
        pointer["type"] = "rewrite"
        pointer["params"] = params

    def reject(params: RejectParams) -> None:
        pointer["type"] = "reject"

    functions = [
        FunctionSpec(
            name="rewrite",
            description="Submit the corrected code.",
            parameters=RewriteParams,
            execute=rewrite,
            validate=lambda params: validate_empty_code(programmer, params),
        ),
    ]
    if allow_reject:
        functions.append(FunctionSpec(
            name="reject",
            description="Give up: the errors cannot be fixed by casting alone.",
            parameters=RejectParams,
            execute=reject,
        ))
    return FunctionController(name="correctInvalidRequest", functions=functions)


async def _converge(
    ctx: Any,
    programmer: CorrectionProgrammer,
    script: str,
    casting: bool,
) -> CorrectionResult:
    budget = ctx.config.orchestrator.compiler_retry
    system_prompt = (
        ctx.prompts.load("correct_casting_system.md", DEFAULT_CASTING_PROMPT)
        if casting
        else ctx.prompts.load("correct_overall_system.md", DEFAULT_OVERALL_PROMPT)
    )

    result = await _compile(programmer, script)
    await _report_validate(ctx, programmer, result, 0)
    failures: list[tuple[str, list[CompileDiagnostic]]] = []
    rounds = 0

    while not result.success and rounds < budget:
        attempts = failures + [(script, result.diagnostics)] if casting else [(script, result.diagnostics)]
        histories = [
            _attempt_history(programmer, index, attempt, diagnostics)
            for index, (attempt, diagnostics) in enumerate(attempts, start=1)
        ]
        pointer: dict[str, Any] = {}
        turn = await ctx.conversate(ConversateRequest(
            source=programmer.source,
            user_message=(
                f"Fix the compilation errors of `{programmer.function_name}` "
                f"in {programmer.location}."
            ),
            controller=_controller(programmer, pointer, allow_reject=casting),
            histories=histories,
            enforce_function_call=True,
            system_prompt=system_prompt,
        ))
        if "type" not in pointer:
            raise CorrectionError(f"{programmer.source}: no correction was submitted for {programmer.location}")
        if pointer["type"] == "reject":
            logger.info("%s: correction of %s rejected after %d round(s)", programmer.source, programmer.location, rounds)
            return CorrectionResult(
                success=False,
                script=script,
                diagnostics=result.diagnostics,
                rounds=rounds,
                rejected=True,
            )

        rounds += 1
        params: RewriteParams = pointer["params"]
        candidate = params.revise.final or params.draft
        await ctx.dispatch(TelemetryEvent(
            kind=TelemetryKind.CORRECT,
            source=programmer.source,
            payload={
                "location": programmer.location,
                "function": programmer.function_name,
                "round": rounds,
                "casting": casting,
                "diagnostics": [d.model_dump() for d in result.diagnostics],
                "think": params.think,
                "draft": params.draft,
                "review": params.revise.review,
                "final": candidate,
                "metric": turn.metric.model_dump(),
                "token_usage": turn.token_usage.model_dump(),
            },
        ))
        failures.append((script, result.diagnostics))
        script = candidate
        result = await _compile(programmer, script)
        await _report_validate(ctx, programmer, result, rounds)

    logger.info(
        "%s: %s %s after %d round(s)",
        programmer.source, programmer.location,
        "compiles" if result.success else "still fails", rounds,
    )
    return CorrectionResult(
        success=result.success,
        script=script,
        diagnostics=result.diagnostics,
        rounds=rounds,
    )


async def correct_casting(ctx: Any, programmer: CorrectionProgrammer, script: str) -> CorrectionResult:
    """Casting-only pass; the model may reject when casting cannot help."""
    return await _converge(ctx, programmer, script, casting=True)


async def correct_overall(ctx: Any, programmer: CorrectionProgrammer, script: str) -> CorrectionResult:
    """Holistic pass; broader rewrites allowed, the target function must remain."""
    return await _converge(ctx, programmer, script, casting=False)
