from typing import Any

import pytest
from pydantic import BaseModel

from baton.tools.registry import ToolRegistry

from support import make_tool


class AddInput(BaseModel):
    a: int
    b: int


def _capture_logs(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    logs: list[str] = []

    def _capture(message: str, *args: object) -> None:
        logs.append(message)

    monkeypatch.setattr("baton.tools.registry.logger.info", _capture)
    monkeypatch.setattr("baton.tools.registry.logger.exception", _capture)
    return logs


@pytest.mark.asyncio
async def test_registry_logs_once_for_execute(monkeypatch: pytest.MonkeyPatch) -> None:
    logs = _capture_logs(monkeypatch)
    registry = ToolRegistry()

    @registry.register(name="math_add", description="add", model=AddInput)
    def add(params: AddInput) -> int:
        return params.a + params.b

    tool = registry.resolve("math_add")
    assert tool is not None
    result = await registry.execute(tool, {"a": 1, "b": 2}, call_id="call_1")

    assert result.output == "3"
    assert not result.is_error
    assert logs.count("tool.call.start name={} call_id={} {{ {} }}") == 1
    assert logs.count("tool.call.end name={} call_id={} duration={:.3f}ms") == 1


@pytest.mark.asyncio
async def test_registry_logs_error_and_reraises(monkeypatch: pytest.MonkeyPatch) -> None:
    logs = _capture_logs(monkeypatch)

    async def explode(_args: dict[str, Any]) -> str:
        raise RuntimeError("boom")

    registry = ToolRegistry()
    registry.add(make_tool("explode", explode))

    with pytest.raises(RuntimeError, match="boom"):
        await registry.execute(registry.resolve("explode"), {})
    assert "tool.call.error name={} call_id={}" in logs
    assert logs.count("tool.call.end name={} call_id={} duration={:.3f}ms") == 1


def test_plugins_are_grouped_and_removable() -> None:
    async def noop(_args: dict[str, Any]) -> str:
        return ""

    registry = ToolRegistry()
    registry.add_plugin("zeta", [make_tool("search", noop)])
    registry.add_plugin("alpha", [make_tool("search", noop), make_tool("fetch", noop)])

    assert registry.plugins() == ["alpha", "zeta"]
    assert [tool.name for tool in registry.tools()] == ["fetch", "search"]
    assert len(registry) == 2
    assert "fetch" in registry

    registry.remove_plugin("alpha")

    assert "fetch" not in registry
    assert registry.has("search")


def test_snapshot_is_isolated_from_later_changes() -> None:
    async def noop(_args: dict[str, Any]) -> str:
        return ""

    registry = ToolRegistry()
    registry.add(make_tool("first", noop))
    frozen = registry.snapshot()

    registry.add(make_tool("second", noop))
    registry.add_plugin("late", [make_tool("third", noop)])

    assert [spec.name for spec in frozen.catalogue()] == ["first"]
    assert sorted(registry.view()) == ["first", "second", "third"]
