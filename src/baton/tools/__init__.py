"""Tool capability, registry, built-ins and remote plugins."""

from baton.tools.base import FunctionTool, Tool, ToolOutput, tool_spec
from baton.tools.builtin import register_builtin_tools
from baton.tools.registry import ToolRegistry
from baton.tools.remote import LocalPluginClient, PluginClient, RemoteTool, StdioPluginClient, connect_plugin
from baton.tools.server import PluginServer

__all__ = [
    "FunctionTool",
    "LocalPluginClient",
    "PluginClient",
    "PluginServer",
    "RemoteTool",
    "StdioPluginClient",
    "Tool",
    "ToolOutput",
    "ToolRegistry",
    "connect_plugin",
    "register_builtin_tools",
    "tool_spec",
]
