"""Hook-first Baton runtime: settings, hooks, tools, backend and sessions."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from baton.backends import BACKENDS, Backend, BackendRegistry
from baton.cancellation import CancellationToken
from baton.config import Settings, load_settings
from baton.errors import PluginError
from baton.events import EventFeed
from baton.hooks import HookPipeline, new_plugin_manager
from baton.hookspecs import BATON_HOOK_NAMESPACE
from baton.orchestrator import TurnOrchestrator, TurnOutcome, TurnPolicy
from baton.session import Session, SessionState, initialize_session
from baton.tools.builtin import register_builtin_tools
from baton.tools.registry import ToolRegistry
from baton.tools.remote import PluginClient, StdioPluginClient, connect_plugin


class BatonFramework:
    """Owns everything a turn needs and hands out sessions."""

    def __init__(
        self,
        workspace: Path,
        settings: Settings | None = None,
        *,
        backends: BackendRegistry | None = None,
        backend: Backend | None = None,
    ) -> None:
        self.workspace = workspace.expanduser().resolve()
        self.settings = settings or load_settings()
        self._plugin_manager = new_plugin_manager()
        self.hooks = HookPipeline(self._plugin_manager)
        self.feed = EventFeed()
        self.tools = ToolRegistry()
        register_builtin_tools(self.tools, workspace=self.workspace)
        self._backends = backends or BACKENDS
        self._backend = backend
        self._plugin_clients: dict[str, PluginClient] = {}
        self._failed_plugins: dict[str, str] = {}
        self.orchestrator = TurnOrchestrator(
            policy=TurnPolicy.from_settings(self.settings),
            hooks=self.hooks,
            feed=self.feed,
        )

    @property
    def backend(self) -> Backend:
        if self._backend is None:
            self._backend = self._backends.create(self.settings.backend, self.settings)
            logger.info("backend.ready name={} wire_format={}", self._backend.name, self._backend.wire_format)
        return self._backend

    @property
    def failed_plugins(self) -> dict[str, str]:
        return dict(self._failed_plugins)

    def load_hooks(self) -> int:
        """Register hook plugins advertised under the ``baton`` entry-point group."""

        count = self._plugin_manager.load_setuptools_entrypoints(BATON_HOOK_NAMESPACE)
        logger.info("hooks.loaded count={}", count)
        return count

    def register_hooks(self, plugin: object, name: str | None = None) -> None:
        self.hooks.register(plugin, name=name)

    async def connect_plugins(self) -> None:
        """Start every configured plugin process and add its tools.

        A plugin that fails to start or list its tools is skipped.
        """

        for config in self.settings.plugins:
            client = StdioPluginClient(config.name, config.command, config.args, config.env)
            try:
                await self.attach_plugin(client)
            except (OSError, PluginError) as exc:
                self._failed_plugins[config.name] = str(exc)
                logger.opt(exception=True).warning("plugin.connect_failed name={}", config.name)
                await client.close()

    async def attach_plugin(self, client: PluginClient) -> None:
        tools = await connect_plugin(client)
        self._plugin_clients[client.name] = client
        self.tools.add_plugin(client.name, tools)

    async def detach_plugin(self, name: str) -> None:
        self.tools.remove_plugin(name)
        client = self._plugin_clients.pop(name, None)
        if client is not None:
            await client.close()

    def create_session(self, *, session_id: str | None = None) -> Session:
        return initialize_session(self.workspace, session_id=session_id)

    async def run_prompt(
        self,
        session: Session,
        text: str,
        token: CancellationToken | None = None,
    ) -> TurnOutcome:
        """Run one user turn for ``session``."""

        return await self.orchestrator.run_turn(session, self.backend, self.tools, token, prompt=text)

    async def close_session(self, session: Session) -> None:
        """Fire SessionEnd hooks and close ``session``."""

        if session.state is SessionState.CLOSED:
            return
        ended = await self.hooks.session_end(session, timeout=self.settings.tool_timeout_seconds)
        for warning in ended.warnings:
            logger.warning("session.end_warning session={} warning={}", session.id, warning)
        session.close()
        logger.info("session.closed session={} messages={}", session.id, len(session.transcript))

    async def aclose(self) -> None:
        for name in list(self._plugin_clients):
            await self.detach_plugin(name)

    def hook_report(self) -> dict[str, list[str]]:
        """Return hook implementation summary for diagnostics."""

        return self.hooks.hook_report()
