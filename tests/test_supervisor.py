import asyncio
import logging
import sys

import pytest

from openchatmobile.config import ServerConfig
from openchatmobile.server import supervisor as supervisor_mod
from openchatmobile.server.supervisor import InferenceSupervisor, SupervisorError

READY_SCRIPT = (
    "import sys, time\n"
    "print('main: HTTP server listening, hostname: 127.0.0.1', flush=True)\n"
    "print('loading weights', file=sys.stderr, flush=True)\n"
    "time.sleep(60)\n"
)
CRASH_SCRIPT = "import sys\nprint('boom', file=sys.stderr, flush=True)\nsys.exit(3)\n"


def _fake(monkeypatch, sup: InferenceSupervisor, script: str) -> None:
    monkeypatch.setattr(sup, "command", lambda: [sys.executable, "-c", script])


def test_command_line():
    config = ServerConfig(
        llama_binary="/opt/llama-server", model="m.gguf", llama_port=9000,
        host="127.0.0.1", ctx_size=2048, gpu_layers=10, parallel=2,
    )
    assert InferenceSupervisor(config).command() == [
        "/opt/llama-server",
        "-m", "m.gguf",
        "--port", "9000",
        "--host", "127.0.0.1",
        "--ctx-size", "2048",
        "--n-gpu-layers", "10",
        "--cont-batching",
        "--parallel", "2",
        "--log-disable",
    ]


def test_launch_failure_is_fatal(tmp_path):
    config = ServerConfig(llama_binary=str(tmp_path / "missing-llama-server"))

    async def run():
        sup = InferenceSupervisor(config)
        with pytest.raises(SupervisorError):
            async with sup:
                pass
        return sup.state

    assert asyncio.run(run()) == supervisor_mod.CRASHED


def test_spawning_disabled():
    async def run():
        async with InferenceSupervisor(ServerConfig(spawn_llama=False)) as sup:
            return sup.state, sup.pid

    assert asyncio.run(run()) == ("external", None)


def test_child_output_logged_and_terminated_on_exit(monkeypatch, caplog):
    caplog.set_level(logging.INFO, logger="openchatmobile.llama")

    async def run():
        sup = InferenceSupervisor(ServerConfig())
        _fake(monkeypatch, sup, READY_SCRIPT)
        async with sup:
            assert await sup.wait_ready(10)
            assert sup.state == supervisor_mod.RUNNING
            proc = sup._process
        return sup, proc

    sup, proc = asyncio.run(run())
    assert proc.returncode is not None
    assert sup.state == supervisor_mod.STOPPED
    messages = [r.getMessage() for r in caplog.records if r.name == "openchatmobile.llama"]
    assert any(m.startswith("[stdout] main: HTTP server listening") for m in messages)
    assert "[stderr] loading weights" in messages


def test_child_terminated_when_body_raises(monkeypatch):
    async def run():
        sup = InferenceSupervisor(ServerConfig())
        _fake(monkeypatch, sup, READY_SCRIPT)
        try:
            async with sup:
                await sup.wait_ready(10)
                raise KeyError("boom")
        except KeyError:
            pass
        return sup._process

    assert asyncio.run(run()).returncode is not None


def test_crash_restarts_up_to_limit(monkeypatch):
    monkeypatch.setattr(supervisor_mod, "RESTART_DELAY_S", 0.0)
    config = ServerConfig(restart_on_crash=True, max_restarts=2)

    async def run():
        sup = InferenceSupervisor(config)
        _fake(monkeypatch, sup, CRASH_SCRIPT)
        async with sup:
            await asyncio.wait_for(sup._watcher, 20)
            return sup.restarts, sup.state

    assert asyncio.run(run()) == (2, supervisor_mod.CRASHED)


def test_crash_without_restart(monkeypatch):
    config = ServerConfig(restart_on_crash=False)

    async def run():
        sup = InferenceSupervisor(config)
        _fake(monkeypatch, sup, CRASH_SCRIPT)
        async with sup:
            await asyncio.wait_for(sup._watcher, 20)
            return sup.restarts, sup.state

    assert asyncio.run(run()) == (0, supervisor_mod.CRASHED)


RECOVER_SCRIPT = (
    "import os, sys, time\n"
    "if not os.path.exists('crashed-once'):\n"
    "    open('crashed-once', 'w').close()\n"
    "    sys.exit(3)\n"
    "print('main: HTTP server listening', flush=True)\n"
    "time.sleep(60)\n"
)


def test_restarted_process_is_watched(monkeypatch):
    monkeypatch.setattr(supervisor_mod, "RESTART_DELAY_S", 0.0)
    config = ServerConfig(restart_on_crash=True, max_restarts=3)

    async def run():
        sup = InferenceSupervisor(config)
        _fake(monkeypatch, sup, RECOVER_SCRIPT)
        async with sup:
            first = sup.pid
            assert await sup.wait_ready(10)
            await asyncio.sleep(0.2)
            return first, sup.pid, sup.restarts, sup.state, sup._watcher.done()

    first, pid, restarts, state, watcher_done = asyncio.run(run())
    assert pid != first
    assert (restarts, state, watcher_done) == (1, supervisor_mod.RUNNING, False)
