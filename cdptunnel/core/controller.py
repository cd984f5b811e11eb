"""Orchestration controller for one tunnel session, start to stop.

``start()`` brings the pieces up in a fixed order:

    proxy (placeholder hostname) → browser → tunnel → proxy (public hostname)

and any failure tears down whatever exists so far.  ``stop()`` is
idempotent and concurrent calls share one teardown.  All public methods
return plain dataclasses and never raise.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from cdptunnel.capabilities.browser.chrome import start_browser
from cdptunnel.capabilities.proxy.server import ProxyConfiguration, RewritingProxy
from cdptunnel.capabilities.tunnel.adapter import TunnelAgentAdapter
from cdptunnel.capabilities.tunnel.base import TunnelState, TunnelStrategy, validate_public_url
from cdptunnel.capabilities.tunnel.ngrok import (
    NgrokAuth,
    ProgrammaticNgrokStrategy,
    SubprocessNgrokStrategy,
    kill_stray_agents,
    make_pyngrok_config,
)
from cdptunnel.config import Config
from cdptunnel.core import subprocess_tracker
from cdptunnel.core.errors import ConfigurationError, ProcessExitedEarly
from cdptunnel.core.events import EventBus, PhaseChangedEvent, ProcessExitedEvent
from cdptunnel.core.ports import find_free_port
from cdptunnel.core.process_supervisor import ProcessKind, ProcessSupervisor
from cdptunnel.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    BOOTSTRAPPING_PROXY = "bootstrapping_proxy"
    STARTING_BROWSER = "starting_browser"
    STARTING_TUNNEL = "starting_tunnel"
    RECONFIGURING_PROXY = "reconfiguring_proxy"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class OrchestrationState:
    phase: Phase = Phase.IDLE
    last_error: str | None = None
    public_url: str | None = None
    debug_port: int | None = None

    @property
    def running(self) -> bool:
        return self.phase is Phase.RUNNING


# ---------------------------------------------------------------------------
# Return types
# ---------------------------------------------------------------------------

@dataclass
class StartResult:
    success: bool
    public_url: str | None = None
    error: str | None = None
    error_type: str | None = None


@dataclass
class StopResult:
    success: bool = True


@dataclass
class Status:
    running: bool
    public_url: str | None
    phase: str
    last_error: str | None = None


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class OrchestrationController:
    """Owns the proxy, the browser and the tunnel of the current session."""

    def __init__(
        self,
        config: Config,
        *,
        event_bus: EventBus | None = None,
        supervisor: ProcessSupervisor | None = None,
        auth: NgrokAuth | None = None,
        adapter: TunnelAgentAdapter | None = None,
        session_store: SessionStore | None = None,
        proxy_factory: Callable[[ProxyConfiguration], RewritingProxy] = RewritingProxy,
        browser_launcher: Callable[..., Awaitable[object]] = start_browser,
        stray_killer: Callable[[], Awaitable[bool]] = kill_stray_agents,
    ) -> None:
        self._config = config
        self._bus = event_bus or EventBus()
        self._supervisor = supervisor or ProcessSupervisor(self._bus)
        pyngrok_config = make_pyngrok_config(config.ngrok_path, config.ngrok_config_path)
        self._auth = auth or NgrokAuth(config.ngrok_config_path, pyngrok_config)
        self._adapter = adapter or TunnelAgentAdapter(
            self._auth, self._build_strategies(pyngrok_config)
        )
        self._sessions = session_store or SessionStore(config.data_dir)
        self._proxy_factory = proxy_factory
        self._browser_launcher = browser_launcher
        self._stray_killer = stray_killer

        self._state = OrchestrationState()
        self._lock = asyncio.Lock()
        self._stop_task: asyncio.Task | None = None
        self._proxy: RewritingProxy | None = None
        self._exits = self._bus.subscribe(ProcessExitedEvent)
        self._lost: ProcessExitedEvent | None = None
        self._watcher: asyncio.Task | None = None

    @property
    def state(self) -> OrchestrationState:
        return self._state

    @property
    def proxy(self) -> RewritingProxy | None:
        return self._proxy

    # -- public API ------------------------------------------------------

    async def start(self) -> StartResult:
        if self._lock.locked() or self._state.phase is not Phase.IDLE:
            logger.info("Start requested while %s; ignoring", self._state.phase.value)
            return StartResult(success=False, error="already_running", error_type="AlreadyRunning")

        async with self._lock:
            self._ensure_watcher()
            self._lost = None
            self._state.last_error = None
            try:
                url = await self._start_sequence()
            except asyncio.CancelledError:
                await self._teardown()
                raise
            except Exception as e:
                logger.error("Start failed: %s", e)
                await self._teardown()
                self._state.last_error = str(e)
                return self._failure(e)
        return StartResult(success=True, public_url=url)

    async def stop(self) -> StopResult:
        if self._stop_task is None or self._stop_task.done():
            if self._state.phase is Phase.IDLE and not self._lock.locked():
                return StopResult(success=True)
            self._stop_task = asyncio.create_task(self._stop_locked())
        try:
            await asyncio.shield(self._stop_task)
        except Exception as e:
            logger.error("Stop failed: %s", e)
        return StopResult(success=True)

    def get_status(self) -> Status:
        return Status(
            running=self._state.running,
            public_url=self._state.public_url if self._state.running else None,
            phase=self._state.phase.value,
            last_error=self._state.last_error,
        )

    async def set_auth_token(self, token: str) -> bool:
        return await self._auth.set_token(token)

    def check_auth_configured(self) -> bool:
        try:
            return self._auth.is_configured()
        except OSError as e:
            logger.warning("Could not check ngrok auth: %s", e)
            return False

    async def aclose(self) -> None:
        """Stop the session and the exit watcher (daemon shutdown)."""
        await self.stop()
        if self._watcher:
            self._watcher.cancel()
            await asyncio.gather(self._watcher, return_exceptions=True)
            self._watcher = None

    # -- start sequence --------------------------------------------------

    async def _start_sequence(self) -> str:
        cfg = self._config

        await self._kill_strays()
        await asyncio.sleep(cfg.settle_delay)
        self._adapter.check_auth()

        self._set_phase(Phase.BOOTSTRAPPING_PROXY)
        debug_port = find_free_port(cfg.debug_port, cfg.debug_port_range, exclude={cfg.proxy_port})
        self._state.debug_port = debug_port
        proxy_config = ProxyConfiguration(listen_port=cfg.proxy_port, upstream_port=debug_port)
        await self._bind_proxy(proxy_config)

        self._set_phase(Phase.STARTING_BROWSER)
        await self._browser_launcher(
            self._supervisor, debug_port, cfg.user_data_dir, cfg.browser_timeout, cfg.chrome_path,
        )
        self._check_lost()

        self._set_phase(Phase.STARTING_TUNNEL)
        session = await self._adapter.open(cfg.proxy_port)
        hostname = validate_public_url(session.public_url)
        session.state = TunnelState.ACTIVE
        self._check_lost()

        self._set_phase(Phase.RECONFIGURING_PROXY)
        await self._bind_proxy(proxy_config.with_hostname(hostname))
        self._check_lost()

        self._state.public_url = session.public_url
        self._set_phase(Phase.RUNNING)
        try:
            self._sessions.save(session.public_url, debug_port, cfg.proxy_port)
        except OSError as e:
            logger.warning("Could not persist session URL: %s", e)
        logger.info("Tunnel ready: %s", session.public_url)
        return session.public_url

    async def _kill_strays(self) -> None:
        if not self._config.kill_stray_agents:
            return
        subprocess_tracker.cleanup_stale_pids({ProcessKind.TUNNEL_AGENT.value})
        await self._stray_killer()

    async def _bind_proxy(self, config: ProxyConfiguration) -> None:
        if self._proxy:
            await self._proxy.close()
            self._proxy = None
        proxy = self._proxy_factory(config)
        await proxy.start()
        self._proxy = proxy

    def _check_lost(self) -> None:
        """Abort the start sequence if a supervised process already died."""
        if not self._lost:
            for kind in (ProcessKind.BROWSER.value, ProcessKind.TUNNEL_AGENT.value):
                proc = self._supervisor.get(kind)
                if proc and proc.ready and not proc.is_alive and not proc.expected_exit:
                    raise ProcessExitedEarly(kind, proc.returncode, proc.output)
            return
        event, self._lost = self._lost, None
        raise ProcessExitedEarly(event.kind, event.returncode)

    # -- teardown --------------------------------------------------------

    async def _stop_locked(self) -> None:
        async with self._lock:
            if self._state.phase is Phase.IDLE:
                return
            await self._teardown()

    async def _teardown(self) -> None:
        """Release everything in reverse order; individual failures are logged."""
        self._set_phase(Phase.STOPPING)
        logger.info("Stopping all components...")

        if self._proxy:
            try:
                await self._proxy.close()
            except Exception as e:
                logger.warning("Error closing proxy: %s", e)
            self._proxy = None

        try:
            await self._adapter.close()
        except Exception as e:
            logger.warning("Error closing tunnel: %s", e)

        for kind in (ProcessKind.TUNNEL_AGENT.value, ProcessKind.BROWSER.value):
            proc = self._supervisor.get(kind)
            if proc is None:
                continue
            try:
                await self._supervisor.kill(proc, self._config.kill_grace)
            except Exception as e:
                logger.warning("Error stopping %s: %s", kind, e)

        try:
            self._sessions.clear()
        except OSError as e:
            logger.warning("Could not clear session file: %s", e)

        self._state.public_url = None
        self._state.debug_port = None
        self._lost = None
        self._set_phase(Phase.IDLE)
        logger.info("All components stopped.")

    # -- exit events -----------------------------------------------------

    def _ensure_watcher(self) -> None:
        if self._watcher is None or self._watcher.done():
            self._watcher = asyncio.create_task(self._watch_exits())

    async def _watch_exits(self) -> None:
        while True:
            event = await self._exits.get()
            phase = self._state.phase
            if phase in (Phase.IDLE, Phase.STOPPING):
                logger.debug("Ignoring exit of %s during %s", event.kind, phase.value)
                continue
            if phase is not Phase.RUNNING:
                self._lost = event
                continue
            logger.error(
                "%s exited unexpectedly (code %s); tearing down session",
                event.kind, event.returncode,
            )
            self._state.last_error = f"{event.kind} exited unexpectedly with code {event.returncode}"
            await self.stop()

    # -- helpers ---------------------------------------------------------

    def _set_phase(self, phase: Phase) -> None:
        previous = self._state.phase
        if previous is phase:
            return
        self._state.phase = phase
        logger.debug("Phase %s -> %s", previous.value, phase.value)
        self._bus.publish(PhaseChangedEvent(phase=phase.value, previous=previous.value))

    def _build_strategies(self, pyngrok_config) -> list[TunnelStrategy]:
        cfg = self._config
        strategies: list[TunnelStrategy] = []
        for name in cfg.strategies:
            if name == "programmatic":
                strategies.append(ProgrammaticNgrokStrategy(
                    pyngrok_config,
                    cfg.connect_timeout,
                    event_bus=self._bus,
                    kill_grace=cfg.kill_grace,
                ))
            elif name == "subprocess":
                strategies.append(SubprocessNgrokStrategy(
                    self._supervisor,
                    self._auth,
                    ngrok_path=cfg.ngrok_path,
                    web_port=cfg.agent_web_port,
                    web_port_range=cfg.agent_web_port_range,
                    timeout=cfg.tunnel_timeout,
                    kill_grace=cfg.kill_grace,
                ))
            else:
                logger.warning("Unknown tunnel strategy %r ignored", name)
        return strategies

    @staticmethod
    def _failure(error: Exception) -> StartResult:
        if isinstance(error, ConfigurationError):
            code = error.code
        elif "authtoken" in str(error).lower():
            code = "auth_required"
        else:
            code = str(error) or type(error).__name__
        return StartResult(success=False, error=code, error_type=type(error).__name__)
