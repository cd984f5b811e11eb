"""Tests for the ngrok strategies, credential handling and the adapter."""
from __future__ import annotations

import asyncio
import json
import sys
import threading
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from pyngrok.exception import PyngrokError

from cdptunnel.capabilities.tunnel import ngrok as ngrok_module
from cdptunnel.capabilities.tunnel.adapter import TunnelAgentAdapter
from cdptunnel.capabilities.tunnel.base import (
    TunnelSession,
    TunnelState,
    TunnelStrategy,
    validate_public_url,
)
from cdptunnel.capabilities.tunnel.ngrok import (
    NgrokAuth,
    ProgrammaticNgrokStrategy,
    SubprocessNgrokStrategy,
    extract_public_url,
    kill_stray_agents,
    write_agent_config,
)
from cdptunnel.core import subprocess_tracker
from cdptunnel.core.errors import (
    ConfigurationError,
    InvalidPublicURL,
    ProcessExitedEarly,
    ProcessSpawnError,
    ResourceUnavailable,
    StrategyUnavailable,
    UpstreamTimeout,
)
from cdptunnel.core.events import EventBus, ProcessExitedEvent
from cdptunnel.core.process_supervisor import ProcessSupervisor


@pytest.fixture(autouse=True)
def no_home_configs(monkeypatch):
    """Ignore ngrok configs in the real home directory."""
    monkeypatch.setattr(ngrok_module, "_default_config_paths", lambda: [])


def _auth(tmp_path: Path, token: str | None = "tok_123") -> NgrokAuth:
    path = tmp_path / "ngrok.yml"
    if token:
        path.write_text(yaml.safe_dump({"version": "3", "agent": {"authtoken": token}}))
    return NgrokAuth(config_path=path, pyngrok_config=MagicMock(config_path=None))


# ---------------------------------------------------------------------------
# URL handling
# ---------------------------------------------------------------------------

class TestExtractPublicUrl:
    def test_forwarding_line(self):
        line = "Forwarding                    https://abc123.example.test -> http://localhost:9223"
        assert extract_public_url(line) == "https://abc123.example.test"

    def test_logfmt_line(self):
        line = (
            't=2024-01-01T00:00:00+0000 lvl=info msg="started tunnel" obj=tunnels '
            "name=command_line addr=http://localhost:9223 url=https://abc.ngrok-free.app"
        )
        assert extract_public_url(line) == "https://abc.ngrok-free.app"

    def test_plain_http_ignored(self):
        assert extract_public_url("url=http://abc.ngrok.io") is None

    def test_no_url(self):
        assert extract_public_url('lvl=info msg="client session established"') is None


class TestValidatePublicUrl:
    def test_valid(self):
        assert validate_public_url("https://abc.ngrok-free.app") == "abc.ngrok-free.app"

    def test_trailing_slash(self):
        assert validate_public_url("https://abc.ngrok-free.app/") == "abc.ngrok-free.app"

    @pytest.mark.parametrize("url", [None, "", "http://abc.ngrok.io", "tcp://0.tcp.ngrok.io:1234", "https://"])
    def test_invalid(self, url):
        with pytest.raises(InvalidPublicURL):
            validate_public_url(url)

    def test_session_hostname(self):
        session = TunnelSession(public_url="https://abc.ngrok-free.app", strategy="subprocess")
        assert session.hostname == "abc.ngrok-free.app"
        assert session.state is TunnelState.PENDING


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class TestNgrokAuth:
    def test_v3_token(self, tmp_path: Path):
        assert _auth(tmp_path, "abc").read_token() == "abc"

    def test_v2_token(self, tmp_path: Path):
        path = tmp_path / "ngrok.yml"
        path.write_text("version: 2\nauthtoken: legacy_tok\n")
        auth = NgrokAuth(config_path=path, pyngrok_config=MagicMock(config_path=None))
        assert auth.read_token() == "legacy_tok"
        assert auth.is_configured() is True

    def test_missing_file(self, tmp_path: Path):
        assert _auth(tmp_path, None).is_configured() is False

    def test_file_without_token(self, tmp_path: Path):
        path = tmp_path / "ngrok.yml"
        path.write_text("version: 3\nagent:\n  web_addr: 127.0.0.1:4041\n")
        auth = NgrokAuth(config_path=path, pyngrok_config=MagicMock(config_path=None))
        assert auth.is_configured() is False

    def test_malformed_yaml(self, tmp_path: Path):
        path = tmp_path / "ngrok.yml"
        path.write_text("authtoken: [unclosed\n")
        auth = NgrokAuth(config_path=path, pyngrok_config=MagicMock(config_path=None))
        assert auth.is_configured() is False

    @pytest.mark.asyncio
    async def test_set_token(self, tmp_path: Path):
        auth = _auth(tmp_path, None)
        with patch.object(ngrok_module.ngrok, "set_auth_token") as mock_set:
            assert await auth.set_token("  new_tok ") is True
        mock_set.assert_called_once()
        assert mock_set.call_args.args[0] == "new_tok"

    @pytest.mark.asyncio
    async def test_set_blank_token(self, tmp_path: Path):
        auth = _auth(tmp_path, None)
        with patch.object(ngrok_module.ngrok, "set_auth_token") as mock_set:
            assert await auth.set_token("   ") is False
        mock_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_set_token_failure(self, tmp_path: Path):
        auth = _auth(tmp_path, None)
        with patch.object(ngrok_module.ngrok, "set_auth_token", side_effect=PyngrokError("bad")):
            assert await auth.set_token("tok") is False


# ---------------------------------------------------------------------------
# Programmatic strategy
# ---------------------------------------------------------------------------

class FakeAgentProcess:
    """Stands in for the ``Popen`` pyngrok keeps for its agent."""

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.returncode: int | None = None
        self._exited = threading.Event()

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    def wait(self) -> int | None:
        self._exited.wait(5)
        return self.returncode


def _patch_pyngrok(agent: FakeAgentProcess, url: str | None = "https://prog.ngrok-free.app"):
    """Patch connect/disconnect/kill/get_ngrok_process; kill ends *agent*."""
    return (
        patch.object(ngrok_module.ngrok, "connect", return_value=MagicMock(public_url=url)),
        patch.object(ngrok_module.ngrok, "disconnect"),
        patch.object(ngrok_module.ngrok, "kill", side_effect=lambda **kwargs: agent.exit(-15)),
        patch.object(ngrok_module.ngrok, "get_ngrok_process", return_value=MagicMock(proc=agent)),
    )


class TestProgrammaticStrategy:
    def test_is_strategy(self):
        assert isinstance(ProgrammaticNgrokStrategy(MagicMock()), TunnelStrategy)

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self):
        bus = EventBus()
        exits = bus.subscribe(ProcessExitedEvent)
        agent = FakeAgentProcess()
        strategy = ProgrammaticNgrokStrategy(MagicMock(), event_bus=bus)
        connect_p, disconnect_p, kill_p, get_process_p = _patch_pyngrok(agent)
        with (
            connect_p as mock_connect,
            disconnect_p as mock_disconnect,
            kill_p as mock_kill,
            get_process_p,
        ):
            url = await strategy.connect(9223)
            assert url == "https://prog.ngrok-free.app"
            assert mock_connect.call_args.args[:2] == (9223, "http")
            assert subprocess_tracker.tracked() == {4242: "tunnel-agent"}

            await strategy.disconnect()

        mock_disconnect.assert_called_once()
        assert mock_disconnect.call_args.args[0] == "https://prog.ngrok-free.app"
        mock_kill.assert_called_once()
        # A requested exit is not reported
        assert exits.empty()
        assert subprocess_tracker.tracked() == {}

    @pytest.mark.asyncio
    async def test_agent_crash_is_published(self):
        bus = EventBus()
        exits = bus.subscribe(ProcessExitedEvent)
        agent = FakeAgentProcess()
        strategy = ProgrammaticNgrokStrategy(MagicMock(), event_bus=bus)
        connect_p, disconnect_p, kill_p, get_process_p = _patch_pyngrok(agent)
        with (connect_p, disconnect_p, kill_p, get_process_p):
            await strategy.connect(9223)

            agent.exit(1)
            event = await asyncio.wait_for(exits.get(), timeout=5)

            assert event == ProcessExitedEvent(kind="tunnel-agent", pid=4242, returncode=1)
            assert subprocess_tracker.tracked() == {}
            await strategy.disconnect()

    @pytest.mark.asyncio
    async def test_error_is_unavailable(self):
        strategy = ProgrammaticNgrokStrategy(MagicMock())
        with (
            patch.object(ngrok_module.ngrok, "connect", side_effect=PyngrokError("no binary")),
            patch.object(ngrok_module.ngrok, "kill") as mock_kill,
        ):
            with pytest.raises(StrategyUnavailable):
                await strategy.connect(9223)
        mock_kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_tunnel_opened_after_timeout_is_closed(self):
        strategy = ProgrammaticNgrokStrategy(MagicMock(), timeout=0.1)
        calls: list[str] = []

        def slow_connect(*args, **kwargs):
            time.sleep(0.5)
            calls.append("opened")
            return MagicMock(public_url="https://late.ngrok-free.app")

        with (
            patch.object(ngrok_module.ngrok, "connect", side_effect=slow_connect),
            patch.object(
                ngrok_module.ngrok, "disconnect",
                side_effect=lambda url, **kwargs: calls.append(f"disconnect {url}"),
            ),
            patch.object(ngrok_module.ngrok, "kill", side_effect=lambda **kwargs: calls.append("kill")),
            patch.object(ngrok_module.ngrok, "get_ngrok_process") as mock_get_process,
        ):
            with pytest.raises(StrategyUnavailable, match="did not return"):
                await strategy.connect(9223)
            assert calls == ["kill"]

            for _ in range(50):
                if calls.count("kill") == 2:
                    break
                await asyncio.sleep(0.05)

        assert calls == ["kill", "opened", "disconnect https://late.ngrok-free.app", "kill"]
        mock_get_process.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_url_is_unavailable(self):
        strategy = ProgrammaticNgrokStrategy(MagicMock())
        with (
            patch.object(ngrok_module.ngrok, "connect", return_value=MagicMock(public_url=None)),
            patch.object(ngrok_module.ngrok, "kill"),
        ):
            with pytest.raises(StrategyUnavailable):
                await strategy.connect(9223)


# ---------------------------------------------------------------------------
# Subprocess strategy (fake ngrok executable)
# ---------------------------------------------------------------------------

FAKE_NGROK = """#!{python}
import json, os, sys, time
mode = {mode!r}
config = sys.argv[-1]
with open({record!r}, "w") as f:
    json.dump({{
        "argv": sys.argv[1:],
        "config_path": config,
        "config": open(config).read(),
        "token": os.environ.get("NGROK_AUTHTOKEN"),
    }}, f)
if mode == "ok":
    print('t=0 lvl=info msg="starting web service" obj=web addr=127.0.0.1:4040', flush=True)
    print('t=0 lvl=info msg="started tunnel" obj=tunnels name=command_line '
          'addr=http://localhost:' + sys.argv[2] + ' url=https://fake123.ngrok-free.app', flush=True)
elif mode == "fail":
    sys.stderr.write("ERROR: authentication failed: The authtoken you specified is invalid\\n")
    sys.exit(1)
time.sleep(30)
"""


def _fake_ngrok(tmp_path: Path, mode: str) -> tuple[Path, Path]:
    record = tmp_path / "record.json"
    script = tmp_path / "ngrok"
    script.write_text(FAKE_NGROK.format(python=sys.executable, mode=mode, record=str(record)))
    script.chmod(0o755)
    return script, record


@pytest.fixture
async def supervisor():
    sup = ProcessSupervisor()
    yield sup
    await sup.kill_all(grace=0.5)


@pytest.mark.skipif(sys.platform == "win32", reason="shebang script")
class TestSubprocessStrategy:
    @pytest.mark.asyncio
    async def test_connect(self, tmp_path: Path, supervisor, free_port):
        script, record = _fake_ngrok(tmp_path, "ok")
        strategy = SubprocessNgrokStrategy(
            supervisor, _auth(tmp_path), ngrok_path=str(script), web_port=free_port, timeout=10,
        )

        url = await strategy.connect(9223)

        assert url == "https://fake123.ngrok-free.app"
        seen = json.loads(record.read_text())
        assert seen["argv"][:3] == ["http", "9223", "--log=stdout"]
        assert seen["token"] == "tok_123"
        assert "tok_123" not in seen["argv"]
        assert yaml.safe_load(seen["config"])["agent"]["web_addr"] == f"127.0.0.1:{free_port}"
        # Throwaway config is gone once the URL is known
        assert not Path(seen["config_path"]).exists()
        assert strategy.web_interface == f"http://127.0.0.1:{free_port}"
        assert strategy.process.is_alive

        proc = strategy.process
        await strategy.disconnect()
        assert not proc.is_alive
        assert strategy.process is None

    @pytest.mark.asyncio
    async def test_timeout_kills_agent(self, tmp_path: Path, supervisor, free_port):
        script, record = _fake_ngrok(tmp_path, "silent")
        strategy = SubprocessNgrokStrategy(
            supervisor, _auth(tmp_path), ngrok_path=str(script), web_port=free_port, timeout=0.5,
        )

        with pytest.raises(UpstreamTimeout, match="forwarding URL"):
            await strategy.connect(9223)

        seen = json.loads(record.read_text())
        assert not Path(seen["config_path"]).exists()
        assert strategy.process is None
        assert supervisor.get("tunnel-agent") is None

    @pytest.mark.asyncio
    async def test_early_exit(self, tmp_path: Path, supervisor, free_port):
        script, record = _fake_ngrok(tmp_path, "fail")
        strategy = SubprocessNgrokStrategy(
            supervisor, _auth(tmp_path), ngrok_path=str(script), web_port=free_port, timeout=10,
        )

        with pytest.raises(ProcessExitedEarly) as exc_info:
            await strategy.connect(9223)

        assert exc_info.value.returncode == 1
        assert "authtoken" in str(exc_info.value)
        assert not Path(json.loads(record.read_text())["config_path"]).exists()

    @pytest.mark.asyncio
    async def test_binary_not_found(self, tmp_path: Path, supervisor):
        strategy = SubprocessNgrokStrategy(supervisor, _auth(tmp_path))
        with patch.object(ngrok_module.shutil, "which", return_value=None):
            with pytest.raises(ProcessSpawnError, match="ngrok not found"):
                await strategy.connect(9223)


class TestAgentConfig:
    def test_write_agent_config(self):
        path = write_agent_config("127.0.0.1:4041")
        try:
            data = yaml.safe_load(path.read_text())
            assert data == {"version": "3", "agent": {"web_addr": "127.0.0.1:4041"}}
        finally:
            path.unlink()


class TestKillStrayAgents:
    @pytest.mark.asyncio
    async def test_killed(self):
        proc = MagicMock()
        proc.wait = AsyncMock(return_value=0)
        with patch.object(ngrok_module.asyncio, "create_subprocess_exec", AsyncMock(return_value=proc)) as mock_exec:
            assert await kill_stray_agents() is True
        argv = mock_exec.call_args.args
        assert "ngrok" in argv or "ngrok.exe" in argv

    @pytest.mark.asyncio
    async def test_none_running(self):
        proc = MagicMock()
        proc.wait = AsyncMock(return_value=1)
        with patch.object(ngrok_module.asyncio, "create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await kill_stray_agents() is False

    @pytest.mark.asyncio
    async def test_tool_missing(self):
        with patch.object(
            ngrok_module.asyncio, "create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError()),
        ):
            assert await kill_stray_agents() is False


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class FakeStrategy:
    def __init__(self, name: str, url: str | None = None, error: Exception | None = None):
        self._name = name
        self._url = url
        self._error = error
        self.connected: list[int] = []
        self.disconnected = False

    @property
    def name(self) -> str:
        return self._name

    async def connect(self, port: int) -> str:
        self.connected.append(port)
        if self._error:
            raise self._error
        return self._url

    async def disconnect(self) -> None:
        self.disconnected = True


def _configured(value: bool = True) -> MagicMock:
    auth = MagicMock()
    auth.is_configured.return_value = value
    return auth


class TestTunnelAgentAdapter:
    @pytest.mark.asyncio
    async def test_first_strategy_wins(self):
        first = FakeStrategy("programmatic", url="https://one.ngrok-free.app")
        second = FakeStrategy("subprocess", url="https://two.ngrok-free.app")
        adapter = TunnelAgentAdapter(_configured(), [first, second])

        session = await adapter.open(9223)

        assert session.public_url == "https://one.ngrok-free.app"
        assert session.strategy == "programmatic"
        assert session.state is TunnelState.PENDING
        assert second.connected == []

    @pytest.mark.asyncio
    async def test_fallback_on_unavailable(self):
        first = FakeStrategy("programmatic", error=StrategyUnavailable("no pyngrok agent"))
        second = FakeStrategy("subprocess", url="https://two.ngrok-free.app")
        adapter = TunnelAgentAdapter(_configured(), [first, second])

        session = await adapter.open(9223)

        assert session.strategy == "subprocess"
        assert adapter.active_strategy is second
        assert first.connected == [9223]

    @pytest.mark.asyncio
    async def test_other_errors_are_final(self):
        first = FakeStrategy("programmatic", error=UpstreamTimeout("slow"))
        second = FakeStrategy("subprocess", url="https://two.ngrok-free.app")
        adapter = TunnelAgentAdapter(_configured(), [first, second])

        with pytest.raises(UpstreamTimeout):
            await adapter.open(9223)
        assert second.connected == []
        assert adapter.session is None

    @pytest.mark.asyncio
    async def test_all_unavailable(self):
        adapter = TunnelAgentAdapter(_configured(), [
            FakeStrategy("programmatic", error=StrategyUnavailable("a")),
            FakeStrategy("subprocess", error=StrategyUnavailable("b")),
        ])
        with pytest.raises(StrategyUnavailable, match="b"):
            await adapter.open(9223)

    @pytest.mark.asyncio
    async def test_no_strategies(self):
        with pytest.raises(StrategyUnavailable):
            await TunnelAgentAdapter(_configured(), []).open(9223)

    @pytest.mark.asyncio
    async def test_auth_required(self):
        strategy = FakeStrategy("subprocess", url="https://x.ngrok-free.app")
        adapter = TunnelAgentAdapter(_configured(False), [strategy])

        with pytest.raises(ConfigurationError) as exc_info:
            await adapter.open(9223)

        assert exc_info.value.code == "auth_required"
        assert strategy.connected == []

    @pytest.mark.asyncio
    async def test_single_session(self):
        adapter = TunnelAgentAdapter(_configured(), [
            FakeStrategy("subprocess", url="https://x.ngrok-free.app"),
        ])
        await adapter.open(9223)
        with pytest.raises(ResourceUnavailable):
            await adapter.open(9223)

    @pytest.mark.asyncio
    async def test_close_and_reopen(self):
        strategy = FakeStrategy("subprocess", url="https://x.ngrok-free.app")
        adapter = TunnelAgentAdapter(_configured(), [strategy])
        session = await adapter.open(9223)

        await adapter.close()

        assert strategy.disconnected is True
        assert session.state is TunnelState.CLOSED
        assert adapter.active_strategy is None
        assert (await adapter.open(9223)).state is TunnelState.PENDING

    @pytest.mark.asyncio
    async def test_close_without_open(self):
        await TunnelAgentAdapter(_configured(), []).close()
