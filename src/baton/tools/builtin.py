"""Built-in tool definitions."""

from __future__ import annotations

import asyncio
import contextlib
import re
import shutil
from pathlib import Path

from pydantic import BaseModel, Field

from baton.errors import ToolExecutionError
from baton.session import WorkingContext, current_context
from baton.tools.base import ToolOutput
from baton.tools.registry import ToolRegistry

DEFAULT_BASH_TIMEOUT_MS = 120_000
MAX_BASH_OUTPUT_CHARS = 30_000
MAX_GREP_MATCHES = 200
MAX_GLOB_RESULTS = 500


class ReadInput(BaseModel):
    path: str = Field(..., description="File path")
    offset: int = Field(default=0, ge=0, description="First line to return, zero based")
    limit: int | None = Field(default=None, ge=1, description="Maximum number of lines")


class WriteInput(BaseModel):
    path: str = Field(..., description="File path")
    content: str = Field(..., description="File content")


class EditInput(BaseModel):
    path: str = Field(..., description="File path")
    old: str = Field(..., description="Search text")
    new: str = Field(..., description="Replacement text")
    replace_all: bool = Field(default=False, description="Replace all occurrences")


class GlobInput(BaseModel):
    pattern: str = Field(..., description="Glob pattern, e.g. **/*.py")
    path: str = Field(default=".", description="Base path")


class GrepInput(BaseModel):
    pattern: str = Field(..., description="Regular expression")
    path: str = Field(default=".", description="File or directory to search")


class BashInput(BaseModel):
    command: str = Field(..., description="Shell command")
    timeout_ms: int = Field(default=DEFAULT_BASH_TIMEOUT_MS, ge=1, description="Kill the command after this long")


def _context(workspace: Path) -> WorkingContext:
    return current_context() or WorkingContext(working_dir=workspace)


def _resolve_path(workspace: Path, raw: str) -> Path:
    return _context(workspace).resolve(raw)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[truncated: {len(text) - limit} more characters]"


def register_builtin_tools(registry: ToolRegistry, *, workspace: Path) -> None:
    """Register file and shell tools.

    Tools work in the working context of the running turn, falling back to
    ``workspace`` when none is active.
    """

    register = registry.register

    @register(name="read", description="Read file content", model=ReadInput)
    def fs_read(params: ReadInput) -> str:
        """Read UTF-8 text with optional offset and limit."""
        file_path = _resolve_path(workspace, params.path)
        if not file_path.is_file():
            raise ToolExecutionError(f"file not found: {file_path}")
        lines = file_path.read_text(encoding="utf-8").splitlines()
        start = min(params.offset, len(lines))
        end = len(lines) if params.limit is None else min(len(lines), start + params.limit)
        return "\n".join(lines[start:end])

    @register(name="write", description="Write file content", model=WriteInput)
    def fs_write(params: WriteInput) -> str:
        file_path = _resolve_path(workspace, params.path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(params.content, encoding="utf-8")
        return f"wrote: {file_path}"

    @register(name="edit", description="Replace text in a file", model=EditInput)
    def fs_edit(params: EditInput) -> str:
        """Replace one or all occurrences of old text in file."""
        file_path = _resolve_path(workspace, params.path)
        text = file_path.read_text(encoding="utf-8")
        count = text.count(params.old)
        if count == 0:
            raise ToolExecutionError("old text not found")
        if params.replace_all:
            updated = text.replace(params.old, params.new)
        else:
            updated = text.replace(params.old, params.new, 1)
            count = 1
        file_path.write_text(updated, encoding="utf-8")
        return f"updated: {file_path} occurrences={count}"

    @register(name="glob", description="Find files by pattern", model=GlobInput)
    def fs_glob(params: GlobInput) -> str:
        """Glob files under a base path, newest first."""
        base = _resolve_path(workspace, params.path)
        matches = [path for path in base.glob(params.pattern) if path.is_file()]
        matches.sort(key=lambda path: path.stat().st_mtime, reverse=True)
        return "\n".join(str(path) for path in matches[:MAX_GLOB_RESULTS]) or "(no matches)"

    @register(name="grep", description="Search file contents", model=GrepInput)
    def fs_grep(params: GrepInput) -> str:
        try:
            pattern = re.compile(params.pattern)
        except re.error as exc:
            raise ToolExecutionError(f"invalid pattern: {exc}") from exc
        base = _resolve_path(workspace, params.path)
        candidates = [base] if base.is_file() else sorted(base.rglob("*"))
        rows: list[str] = []
        for path in candidates:
            if not path.is_file():
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for idx, line in enumerate(content.splitlines(), start=1):
                if pattern.search(line):
                    rows.append(f"{path}:{idx}:{line}")
                    if len(rows) >= MAX_GREP_MATCHES:
                        rows.append(f"[truncated at {MAX_GREP_MATCHES} matches]")
                        return "\n".join(rows)
        return "\n".join(rows) if rows else "(no matches)"

    @register(name="bash", description="Run shell command", model=BashInput)
    async def run_bash(params: BashInput) -> ToolOutput:
        """Execute bash in the working directory. A non-zero exit is reported as an error."""
        context = _context(workspace)
        executable = shutil.which("bash") or "bash"
        process = await asyncio.create_subprocess_exec(
            executable,
            "-lc",
            params.command,
            cwd=str(context.working_dir),
            env=context.environment or None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            async with asyncio.timeout(params.timeout_ms / 1000):
                stdout_bytes, stderr_bytes = await process.communicate()
        except TimeoutError:
            await _kill(process)
            return ToolOutput.error(f"command timed out after {params.timeout_ms}ms")
        except asyncio.CancelledError:
            await _kill(process)
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            message = stderr or stdout or "(no output)"
            return ToolOutput.error(_truncate(f"exit={process.returncode}: {message}", MAX_BASH_OUTPUT_CHARS))
        combined = "\n".join(part for part in (stdout, stderr) if part)
        return ToolOutput(_truncate(combined or "(no output)", MAX_BASH_OUTPUT_CHARS))


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()
