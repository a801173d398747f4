"""Compiler and artifact-writer collaborator contracts.

The compiler service turns generated sources into either a success (with
optional documentation) or an ordered list of diagnostics. It is external;
this module only fixes the shape PhaseForge talks to and guards the calls
that must not interleave.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence, runtime_checkable

from phaseforge.core.exceptions import CompilerError
from phaseforge.core.models import CompileDiagnostic, CompileResult

logger = logging.getLogger("phaseforge.compiler")


@runtime_checkable
class Compiler(Protocol):
    async def compile(self, files: dict[str, str], target: Optional[str] = None) -> CompileResult:
        ...


@runtime_checkable
class ArtifactWriter(Protocol):
    async def write(self, document: dict, excluded_paths: Sequence[str] = ()) -> dict[str, str]:
        ...


class CriticalCompiler:
    """Wraps a compiler so at most ``permits`` compilations run at once."""

    def __init__(self, compiler: Compiler, permits: int = 2):
        self._compiler = compiler
        self._semaphore = asyncio.Semaphore(permits)
        self.permits = permits

    async def compile(self, files: dict[str, str], target: Optional[str] = None) -> CompileResult:
        async with self._semaphore:
            try:
                result = await self._compiler.compile(files, target)
            except asyncio.CancelledError:
                raise
            except CompilerError:
                raise
            except Exception as e:
                raise CompilerError(f"Compiler failed on {target or 'workspace'}: {e}") from e
        logger.debug(
            "Compiled %s: %s (%d diagnostics)",
            target or "workspace", result.type, len(result.diagnostics),
        )
        return result


def filter_diagnostics(result: CompileResult, location: str) -> CompileResult:
    """Keep only the diagnostics reported against ``location``.

    A failure whose diagnostics all belong to other files is treated as a
    success of the target file.
    """
    if result.success:
        return result
    kept = [d for d in result.diagnostics if d.file == location]
    if not kept:
        return CompileResult.ok(result.documentation)
    return CompileResult.failed(kept)


def annotate_diagnostics(
    script: str,
    diagnostics: Sequence[CompileDiagnostic],
    comment: str = "//",
) -> str:
    """Insert error comments above the offending lines of ``script``."""
    lines = script.split("\n")
    by_line: dict[int, list[CompileDiagnostic]] = {}
    for diagnostic in diagnostics:
        if diagnostic.line is None or not 1 <= diagnostic.line <= len(lines):
            continue
        by_line.setdefault(diagnostic.line, []).append(diagnostic)
    if not by_line:
        return script

    output: list[str] = []
    for number, line in enumerate(lines, start=1):
        for diagnostic in by_line.get(number, []):
            indent = line[: len(line) - len(line.lstrip())]
            code = f" [{diagnostic.code}]" if diagnostic.code else ""
            message = diagnostic.message.replace("\n", " ")
            output.append(f"{indent}{comment} error{code}: {message}")
        output.append(line)
    return "\n".join(output)


def format_diagnostics(diagnostics: Sequence[CompileDiagnostic]) -> str:
    """Render diagnostics as a markdown bullet list for prompts."""
    if not diagnostics:
        return "(no diagnostics)"
    rendered = []
    for d in diagnostics:
        where = d.file or "<unknown>"
        if d.line is not None:
            where += f":{d.line}"
            if d.column is not None:
                where += f":{d.column}"
        code = f" {d.code}" if d.code else ""
        rendered.append(f"- {where} {d.severity}{code}: {d.message}")
    return "\n".join(rendered)
