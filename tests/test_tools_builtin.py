from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

from baton.session import WorkingContext, use_context
from baton.tools import ToolOutput, ToolRegistry, register_builtin_tools


@pytest.fixture
def registry(tmp_path: Path) -> ToolRegistry:
    registry = ToolRegistry()
    register_builtin_tools(registry, workspace=tmp_path)
    return registry


async def _run(registry: ToolRegistry, name: str, **params: object) -> ToolOutput:
    tool = registry.resolve(name)
    assert tool is not None
    return await tool.run(params)


def test_builtin_catalogue(registry: ToolRegistry) -> None:
    specs = registry.catalogue()

    assert [spec.name for spec in specs] == ["bash", "edit", "glob", "grep", "read", "write"]
    read = next(spec for spec in specs if spec.name == "read")
    assert read.source == "builtin"
    assert "path" in read.input_schema["properties"]


@pytest.mark.asyncio
async def test_write_then_read_with_offset_and_limit(registry: ToolRegistry, tmp_path: Path) -> None:
    written = await _run(registry, "write", path="notes/a.txt", content="one\ntwo\nthree\nfour")

    assert not written.is_error
    assert (tmp_path / "notes" / "a.txt").is_file()
    assert (await _run(registry, "read", path="notes/a.txt")).output == "one\ntwo\nthree\nfour"
    assert (await _run(registry, "read", path="notes/a.txt", offset=1, limit=2)).output == "two\nthree"


@pytest.mark.asyncio
async def test_read_missing_file_is_error(registry: ToolRegistry) -> None:
    result = await _run(registry, "read", path="missing.txt")

    assert result.is_error
    assert "file not found" in result.output


@pytest.mark.asyncio
async def test_invalid_input_is_reported(registry: ToolRegistry) -> None:
    result = await _run(registry, "read", offset=-1)

    assert result.is_error
    assert result.output.startswith("invalid input for read:")


@pytest.mark.asyncio
async def test_edit_replaces_first_or_all(registry: ToolRegistry, tmp_path: Path) -> None:
    target = tmp_path / "code.py"
    target.write_text("x = 1\nx = 1\n", encoding="utf-8")

    first = await _run(registry, "edit", path="code.py", old="x = 1", new="x = 2")
    assert "occurrences=1" in first.output
    assert target.read_text(encoding="utf-8") == "x = 2\nx = 1\n"

    every = await _run(registry, "edit", path="code.py", old="x", new="y", replace_all=True)
    assert "occurrences=2" in every.output
    assert target.read_text(encoding="utf-8") == "y = 2\ny = 1\n"

    missing = await _run(registry, "edit", path="code.py", old="zzz", new="q")
    assert missing == ToolOutput("old text not found", is_error=True)


@pytest.mark.asyncio
async def test_glob_lists_newest_first(registry: ToolRegistry, tmp_path: Path) -> None:
    older = tmp_path / "src" / "old.py"
    newer = tmp_path / "src" / "new.py"
    older.parent.mkdir()
    older.write_text("", encoding="utf-8")
    newer.write_text("", encoding="utf-8")
    os.utime(older, (1_000_000, 1_000_000))
    (tmp_path / "README.md").write_text("", encoding="utf-8")

    result = await _run(registry, "glob", pattern="**/*.py")

    assert result.output.splitlines() == [str(newer), str(older)]
    assert (await _run(registry, "glob", pattern="*.rs")).output == "(no matches)"


@pytest.mark.asyncio
async def test_grep_reports_path_line_and_text(registry: ToolRegistry, tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("alpha\nbeta\nalphabet\n", encoding="utf-8")

    result = await _run(registry, "grep", pattern=r"^alpha")

    assert result.output.splitlines() == [f"{tmp_path / 'a.txt'}:1:alpha", f"{tmp_path / 'a.txt'}:3:alphabet"]
    bad = await _run(registry, "grep", pattern="(")
    assert bad.is_error
    assert "invalid pattern" in bad.output


needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash is not available")


@needs_bash
@pytest.mark.asyncio
async def test_bash_runs_in_workspace(registry: ToolRegistry, tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("here", encoding="utf-8")

    result = await _run(registry, "bash", command="cat marker.txt && echo ' done'")

    assert result == ToolOutput("here done")


@needs_bash
@pytest.mark.asyncio
async def test_bash_nonzero_exit_is_error(registry: ToolRegistry) -> None:
    result = await _run(registry, "bash", command="echo broken >&2; exit 3")

    assert result == ToolOutput("exit=3: broken", is_error=True)


@needs_bash
@pytest.mark.asyncio
async def test_bash_timeout_kills_command(registry: ToolRegistry) -> None:
    result = await _run(registry, "bash", command="sleep 5", timeout_ms=100)

    assert result.is_error
    assert "timed out after 100ms" in result.output


@pytest.mark.asyncio
async def test_paths_resolve_against_active_working_context(registry: ToolRegistry, tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    (project / "notes.txt").write_text("from the session", encoding="utf-8")

    with use_context(WorkingContext(working_dir=project)):
        result = await _run(registry, "read", path="notes.txt")

    assert result == ToolOutput("from the session")
    assert (await _run(registry, "read", path="notes.txt")).is_error


@needs_bash
@pytest.mark.asyncio
async def test_bash_uses_session_directory_and_environment(registry: ToolRegistry, tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    context = WorkingContext(working_dir=project, environment={**os.environ, "BATON_MARK": "from-session"})

    with use_context(context):
        result = await _run(registry, "bash", command='echo "$BATON_MARK"; pwd')

    mark, cwd = result.output.splitlines()
    assert mark == "from-session"
    assert Path(cwd).resolve() == project.resolve()
