"""Spawn, watch and terminate the browser and tunnel-agent processes."""
from __future__ import annotations

import asyncio
import logging
import re
import shlex
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

import aiohttp

from cdptunnel.core import subprocess_tracker
from cdptunnel.core.errors import (
    ProcessExitedEarly,
    ProcessSpawnError,
    ResourceUnavailable,
    UpstreamTimeout,
)
from cdptunnel.core.events import EventBus, ProcessExitedEvent
from cdptunnel.core.polling import ScheduledRetry

logger = logging.getLogger(__name__)

_OUTPUT_LINES = 500
_STREAM_LIMIT = 1024 * 1024


class ProcessKind(str, Enum):
    BROWSER = "browser"
    TUNNEL_AGENT = "tunnel-agent"


@dataclass
class ManagedProcess:
    """A supervised OS process plus everything observed about it."""

    kind: str
    process: asyncio.subprocess.Process
    patterns: tuple[re.Pattern, ...] = ()
    stdout: deque = field(default_factory=lambda: deque(maxlen=_OUTPUT_LINES))
    stderr: deque = field(default_factory=lambda: deque(maxlen=_OUTPUT_LINES))
    returncode: int | None = None
    ready: bool = False
    ready_value: str | None = None
    expected_exit: bool = False
    _ready: asyncio.Future = field(init=False, repr=False)
    _readers: list[asyncio.Task] = field(default_factory=list, repr=False)
    _watcher: asyncio.Task | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self._ready = asyncio.get_running_loop().create_future()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.returncode is None and self.process.returncode is None

    @property
    def output(self) -> str:
        """Captured stderr, or stdout when stderr is empty."""
        return "\n".join(self.stderr or self.stdout)

    def mark_ready(self, value: str | None = None) -> None:
        if self._ready.done():
            return
        self.ready = True
        self.ready_value = value
        self._ready.set_result(value)

    def _fail(self, exc: BaseException) -> None:
        if self._ready.done():
            return
        self._ready.set_exception(exc)
        # Waiters still get the exception; this only marks it retrieved.
        self._ready.exception()

    def _scan(self, line: str) -> None:
        if self._ready.done():
            return
        for pattern in self.patterns:
            match = pattern.search(line)
            if match:
                value = match.group(1) if match.groups() else match.group(0)
                self.mark_ready(value.strip())
                return


class ProcessSupervisor:
    """Owns every external process of a session, at most one per kind.

    Readiness is either pattern-based (patterns passed to ``spawn``) or an
    HTTP probe (``probe_url`` passed to ``wait_ready``).  An exit before
    readiness fails the waiter with ``ProcessExitedEarly``; an exit after
    readiness that nobody asked for is published as ``ProcessExitedEvent``.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        probe_interval: float = 0.5,
    ) -> None:
        self._event_bus = event_bus
        self._probe_interval = probe_interval
        self._processes: dict[str, ManagedProcess] = {}

    def get(self, kind: str) -> ManagedProcess | None:
        return self._processes.get(kind)

    def alive(self) -> list[ManagedProcess]:
        return [p for p in self._processes.values() if p.is_alive]

    async def spawn(
        self,
        kind: str,
        command: str,
        args: Iterable[str] = (),
        env: dict[str, str] | None = None,
        patterns: Iterable[str | re.Pattern] = (),
    ) -> ManagedProcess:
        existing = self._processes.get(kind)
        if existing and existing.is_alive:
            raise ResourceUnavailable(f"A {kind} process is already running (PID {existing.pid})")

        argv = [command, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Could not launch {kind} ({command}): {e}") from e

        compiled = tuple(
            re.compile(p, re.IGNORECASE) if isinstance(p, str) else p for p in patterns
        )
        managed = ManagedProcess(kind=kind, process=proc, patterns=compiled)
        subprocess_tracker.track(proc.pid, kind)
        managed._readers = [
            asyncio.create_task(self._read_stream(managed, proc.stdout, "stdout")),
            asyncio.create_task(self._read_stream(managed, proc.stderr, "stderr")),
        ]
        managed._watcher = asyncio.create_task(self._watch(managed))
        self._processes[kind] = managed
        logger.info("Started %s (PID %d): %s", kind, proc.pid, shlex.join(argv))
        return managed

    async def wait_ready(
        self,
        managed: ManagedProcess,
        timeout: float,
        probe_url: str | None = None,
    ) -> str | None:
        """Wait until *managed* is ready; returns the captured value, if any."""
        probe: asyncio.Task | None = None
        if probe_url:
            retry = ScheduledRetry(
                lambda: self._probe(probe_url),
                interval=self._probe_interval,
                timeout=timeout,
                description=f"{managed.kind} at {probe_url}",
            )
            probe = asyncio.create_task(self._run_probe(managed, retry))
        try:
            return await asyncio.wait_for(asyncio.shield(managed._ready), timeout)
        except asyncio.TimeoutError:
            raise UpstreamTimeout(
                f"Timed out after {timeout:.0f}s waiting for {managed.kind} to become ready"
            ) from None
        finally:
            if probe:
                probe.cancel()

    async def kill(self, managed: ManagedProcess, grace: float = 2.0) -> None:
        """SIGTERM, then SIGKILL after *grace* seconds."""
        managed.expected_exit = True
        proc = managed.process
        if proc.returncode is None:
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "%s (PID %d) still alive after %.0fs, killing",
                    managed.kind, managed.pid, grace,
                )
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            except ProcessLookupError:
                pass

        if managed._watcher:
            await managed._watcher
        if managed._readers:
            _, pending = await asyncio.wait(managed._readers, timeout=1.0)
            for task in pending:
                task.cancel()

        if self._processes.get(managed.kind) is managed:
            del self._processes[managed.kind]
        logger.info("Stopped %s process (PID %d)", managed.kind, managed.pid)

    async def kill_all(self, grace: float = 2.0) -> None:
        for managed in list(self._processes.values()):
            await self.kill(managed, grace)

    # ------------------------------------------------------------------

    async def _read_stream(
        self,
        managed: ManagedProcess,
        stream: asyncio.StreamReader | None,
        label: str,
    ) -> None:
        if not stream:
            return
        buffer = managed.stdout if label == "stdout" else managed.stderr
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.debug("%s(%s): overlong line dropped", managed.kind, label)
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            buffer.append(text)
            if text:
                logger.debug("%s(%s): %s", managed.kind, label, text)
            managed._scan(text)

    async def _watch(self, managed: ManagedProcess) -> None:
        returncode = await managed.process.wait()
        managed.returncode = returncode
        subprocess_tracker.untrack(managed.pid)

        if not managed.ready:
            # Let the readers catch up so the error carries the last output.
            if managed._readers:
                await asyncio.wait(managed._readers, timeout=0.5)
            if managed._ready.done():
                return
            if not managed.expected_exit:
                logger.warning("%s exited with code %s before becoming ready", managed.kind, returncode)
            managed._fail(ProcessExitedEarly(managed.kind, returncode, managed.output))
        elif managed.expected_exit:
            logger.debug("%s (PID %d) exited with code %s", managed.kind, managed.pid, returncode)
        else:
            logger.warning(
                "%s (PID %d) exited unexpectedly with code %s",
                managed.kind, managed.pid, returncode,
            )
            if self._event_bus:
                self._event_bus.publish(
                    ProcessExitedEvent(kind=managed.kind, pid=managed.pid, returncode=returncode)
                )

    async def _run_probe(self, managed: ManagedProcess, retry: ScheduledRetry) -> None:
        try:
            await retry.run()
        except UpstreamTimeout as e:
            managed._fail(e)
            return
        logger.info("%s ready after %d probe(s)", managed.kind, retry.attempts)
        managed.mark_ready()

    @staticmethod
    async def _probe(url: str) -> bool:
        """Return True if *url* answers 200."""
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=2)) as resp:
                    return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
            return False
