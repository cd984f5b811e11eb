"""ngrok agent: credential handling and the two ways of starting a tunnel.

``ProgrammaticNgrokStrategy`` drives the agent through pyngrok.
``SubprocessNgrokStrategy`` runs the ``ngrok`` executable directly with a
throwaway config so its web interface cannot collide with an agent that is
already running, and reads the public URL from the agent's log output.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import sys
import tempfile
from pathlib import Path

import yaml
from pyngrok import conf, ngrok
from pyngrok.exception import PyngrokError

from cdptunnel.core import subprocess_tracker
from cdptunnel.core.errors import (
    ProcessExitedEarly,
    ProcessSpawnError,
    StrategyUnavailable,
    UpstreamTimeout,
)
from cdptunnel.core.events import EventBus, ProcessExitedEvent
from cdptunnel.core.ports import find_free_port
from cdptunnel.core.process_supervisor import ManagedProcess, ProcessKind, ProcessSupervisor

logger = logging.getLogger(__name__)

# Log formats of different agent versions, newest first.
URL_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"url=(https://[^\s\"']+)", re.IGNORECASE),
    re.compile(r"Forwarding\s+(https://[^\s]+)", re.IGNORECASE),
)


def extract_public_url(text: str) -> str | None:
    """Return the first public URL found in agent output, or None."""
    for pattern in URL_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


def _default_config_paths() -> list[Path]:
    home = Path.home()
    paths = [
        home / ".config" / "ngrok" / "ngrok.yml",
        home / "Library" / "Application Support" / "ngrok" / "ngrok.yml",
        home / ".ngrok2" / "ngrok.yml",
    ]
    local_appdata = os.environ.get("LOCALAPPDATA")
    if local_appdata:
        paths.append(Path(local_appdata) / "ngrok" / "ngrok.yml")
    else:
        paths.append(home / "AppData" / "Local" / "ngrok" / "ngrok.yml")
    return paths


def make_pyngrok_config(
    ngrok_path: str | None = None,
    config_path: Path | None = None,
) -> conf.PyngrokConfig:
    kwargs: dict = {"monitor_thread": False}
    if ngrok_path:
        kwargs["ngrok_path"] = ngrok_path
    if config_path:
        kwargs["config_path"] = str(config_path)
    return conf.PyngrokConfig(**kwargs)


class NgrokAuth:
    """Reads and persists the agent's authtoken."""

    def __init__(
        self,
        config_path: Path | None = None,
        pyngrok_config: conf.PyngrokConfig | None = None,
    ) -> None:
        self._config_path = config_path
        self._pyngrok_config = pyngrok_config or make_pyngrok_config(config_path=config_path)

    def config_paths(self) -> list[Path]:
        paths: list[Path] = []
        if self._config_path:
            paths.append(self._config_path)
        pyngrok_path = getattr(self._pyngrok_config, "config_path", None)
        if pyngrok_path:
            paths.append(Path(pyngrok_path))
        for path in _default_config_paths():
            if path not in paths:
                paths.append(path)
        return paths

    def read_token(self) -> str | None:
        for path in self.config_paths():
            if not path.is_file():
                continue
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.debug("Could not read ngrok config %s: %s", path, e)
                continue
            if not isinstance(data, dict):
                continue
            agent = data.get("agent") if isinstance(data.get("agent"), dict) else {}
            token = data.get("authtoken") or agent.get("authtoken")
            if token:
                return str(token).strip()
        return None

    def is_configured(self) -> bool:
        return self.read_token() is not None

    async def set_token(self, token: str) -> bool:
        """Persist *token* via the agent's own config mechanism."""
        if not isinstance(token, str) or not token.strip():
            logger.warning("Refusing to store an empty ngrok authtoken")
            return False
        try:
            await asyncio.to_thread(
                ngrok.set_auth_token, token.strip(), pyngrok_config=self._pyngrok_config
            )
        except (PyngrokError, OSError) as e:
            logger.warning("Failed to save ngrok authtoken: %s", e)
            return False
        logger.info("ngrok authtoken saved")
        return True


class ProgrammaticNgrokStrategy:
    """Open the tunnel with ``pyngrok.ngrok.connect``.

    pyngrok owns the agent process.  Once connected it is watched, and an
    exit nobody asked for is published as ``ProcessExitedEvent``.
    """

    def __init__(
        self,
        pyngrok_config: conf.PyngrokConfig,
        timeout: float = 10.0,
        event_bus: EventBus | None = None,
        kill_grace: float = 2.0,
    ) -> None:
        self._config = pyngrok_config
        self._timeout = timeout
        self._event_bus = event_bus
        self._kill_grace = kill_grace
        self._public_url: str | None = None
        self._watcher: asyncio.Task | None = None
        self._closing = False
        self._late_cleanup: asyncio.Task | None = None

    @property
    def name(self) -> str:
        return "programmatic"

    async def connect(self, port: int) -> str:
        self._closing = False
        pending = asyncio.ensure_future(asyncio.to_thread(
            ngrok.connect, port, "http",
            pyngrok_config=self._config, inspect=False,
        ))
        try:
            tunnel = await asyncio.wait_for(asyncio.shield(pending), timeout=self._timeout)
        except asyncio.TimeoutError:
            # The worker thread keeps going; whatever it opens is closed later.
            pending.add_done_callback(self._close_abandoned)
            await self._kill_agent()
            raise StrategyUnavailable(
                f"ngrok.connect did not return within {self._timeout:.0f}s"
            ) from None
        except asyncio.CancelledError:
            pending.add_done_callback(self._close_abandoned)
            raise
        except (PyngrokError, OSError) as e:
            await self._kill_agent()
            raise StrategyUnavailable(f"ngrok.connect failed: {e}") from e

        if not tunnel.public_url:
            await self._kill_agent()
            raise StrategyUnavailable("ngrok.connect returned no public URL")
        self._public_url = tunnel.public_url
        await self._watch_agent()
        logger.info("ngrok connected programmatically: %s", self._public_url)
        return self._public_url

    async def disconnect(self) -> None:
        self._closing = True
        url, self._public_url = self._public_url, None
        await self._close(url)

        watcher, self._watcher = self._watcher, None
        if watcher:
            _, running = await asyncio.wait({watcher}, timeout=self._kill_grace)
            for task in running:
                task.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

    async def _close(self, url: str | None, kill: bool = True) -> None:
        if url:
            try:
                await asyncio.to_thread(ngrok.disconnect, url, pyngrok_config=self._config)
            except (PyngrokError, OSError) as e:
                logger.warning("ngrok disconnect failed: %s", e)
        if kill:
            await self._kill_agent()

    async def _kill_agent(self) -> None:
        try:
            await asyncio.to_thread(ngrok.kill, pyngrok_config=self._config)
        except (PyngrokError, OSError) as e:
            logger.debug("ngrok kill failed: %s", e)

    def _close_abandoned(self, pending: asyncio.Future) -> None:
        """Close a tunnel opened by a connect call that was given up on."""
        if pending.cancelled():
            return
        error = pending.exception()
        url = None
        if error is not None:
            logger.debug("Abandoned ngrok.connect failed: %s", error)
        else:
            url = pending.result().public_url
            logger.warning("ngrok.connect opened %s after it was abandoned; closing it", url)
        # A later connect may own the agent by now; then only the stray tunnel goes.
        self._late_cleanup = asyncio.ensure_future(
            self._close(url, kill=self._public_url is None)
        )

    async def _watch_agent(self) -> None:
        try:
            agent = await asyncio.to_thread(ngrok.get_ngrok_process, pyngrok_config=self._config)
        except (PyngrokError, OSError) as e:
            logger.warning("Could not find the ngrok agent process to watch: %s", e)
            return
        proc = agent.proc
        subprocess_tracker.track(proc.pid, ProcessKind.TUNNEL_AGENT.value)
        self._watcher = asyncio.create_task(self._watch(proc))

    async def _watch(self, proc) -> None:
        try:
            returncode = await asyncio.to_thread(proc.wait)
        finally:
            subprocess_tracker.untrack(proc.pid)

        if self._closing:
            logger.debug("ngrok agent (PID %d) exited with code %s", proc.pid, returncode)
            return
        logger.warning("ngrok agent (PID %d) exited unexpectedly with code %s", proc.pid, returncode)
        if self._event_bus:
            self._event_bus.publish(ProcessExitedEvent(
                kind=ProcessKind.TUNNEL_AGENT.value, pid=proc.pid, returncode=returncode,
            ))


def write_agent_config(web_addr: str) -> Path:
    """Write a minimal agent config pointing the web interface at *web_addr*."""
    fd, name = tempfile.mkstemp(prefix="ngrok-", suffix=".yml")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        yaml.safe_dump({"version": "3", "agent": {"web_addr": web_addr}}, f)
    return Path(name)


class SubprocessNgrokStrategy:
    """Run the ``ngrok`` executable and parse the URL from its stdout."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        auth: NgrokAuth,
        ngrok_path: str | None = None,
        web_port: int = 4040,
        web_port_range: int = 100,
        timeout: float = 30.0,
        kill_grace: float = 2.0,
    ) -> None:
        self._supervisor = supervisor
        self._auth = auth
        self._ngrok_path = ngrok_path
        self._web_port = web_port
        self._web_port_range = web_port_range
        self._timeout = timeout
        self._kill_grace = kill_grace
        self._process: ManagedProcess | None = None
        self.web_interface: str | None = None

    @property
    def name(self) -> str:
        return "subprocess"

    @property
    def process(self) -> ManagedProcess | None:
        return self._process

    async def connect(self, port: int) -> str:
        binary = self._ngrok_path or shutil.which("ngrok")
        if not binary:
            raise ProcessSpawnError("ngrok not found in PATH. Install it from https://ngrok.com/download")

        web_port = find_free_port(self._web_port, self._web_port_range)
        web_addr = f"127.0.0.1:{web_port}"
        config_path = write_agent_config(web_addr)
        # --config replaces the default config file, so the stored token is
        # handed over through the environment instead.
        env = dict(os.environ)
        token = self._auth.read_token()
        if token:
            env["NGROK_AUTHTOKEN"] = token
        try:
            self._process = await self._supervisor.spawn(
                ProcessKind.TUNNEL_AGENT.value,
                binary,
                ["http", str(port), "--log=stdout", "--config", str(config_path)],
                env=env,
                patterns=URL_PATTERNS,
            )
            try:
                url = await self._supervisor.wait_ready(self._process, self._timeout)
            except UpstreamTimeout:
                await self._supervisor.kill(self._process, self._kill_grace)
                self._process = None
                raise UpstreamTimeout(
                    f"Timed out after {self._timeout:.0f}s waiting for ngrok to report a forwarding URL"
                ) from None
            except ProcessExitedEarly:
                self._process = None
                raise
        finally:
            config_path.unlink(missing_ok=True)

        self.web_interface = f"http://{web_addr}"
        logger.info("ngrok forwarding found: %s (web interface %s)", url, self.web_interface)
        return url

    async def disconnect(self) -> None:
        proc, self._process = self._process, None
        self.web_interface = None
        if proc:
            await self._supervisor.kill(proc, self._kill_grace)


async def kill_stray_agents() -> bool:
    """Terminate ngrok agents left over from an earlier run.

    Returns True if anything was killed.
    """
    if sys.platform == "win32":
        argv = ["taskkill", "/F", "/IM", "ngrok.exe"]
    else:
        argv = ["pkill", "-x", "ngrok"]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        code = await proc.wait()
    except OSError as e:
        logger.info("Could not look for existing ngrok processes: %s", e)
        return False
    if code == 0:
        logger.info("Killed existing ngrok processes")
        return True
    logger.info("No existing ngrok processes found")
    return False
