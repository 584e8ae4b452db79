"""llama-server child process supervisor.

Usage::

    async with InferenceSupervisor(config) as supervisor:
        ...  # serve requests

The context manager guarantees the child gets SIGTERM (then SIGKILL after a
grace period) on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import shlex

import httpx

from openchatmobile.config import ServerConfig
from openchatmobile.protocol import LLAMA_READY_MARKER

log = logging.getLogger(__name__)
llama_log = logging.getLogger("openchatmobile.llama")

STOPPED = "stopped"
STARTING = "starting"
RUNNING = "running"
CRASHED = "crashed"
EXTERNAL = "external"

TERMINATE_GRACE_S = 5.0
RESTART_DELAY_S = 2.0
PROBE_INTERVAL_S = 0.5


class SupervisorError(RuntimeError):
    """llama-server could not be launched."""


class InferenceSupervisor:
    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.restarts = 0
        self.ready = asyncio.Event()
        self._process: asyncio.subprocess.Process | None = None
        self._pumps: set[asyncio.Task] = set()
        self._watcher: asyncio.Task | None = None
        self._probe: asyncio.Task | None = None
        self._stopping = False
        self._state = STOPPED if config.spawn_llama else EXTERNAL

    # ------------------------------------------------------------------
    @property
    def state(self) -> str:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def command(self) -> list[str]:
        c = self.config
        return [
            c.llama_binary,
            "-m", c.model,
            "--port", str(c.llama_port),
            "--host", c.host,
            "--ctx-size", str(c.ctx_size),
            "--n-gpu-layers", str(c.gpu_layers),
            "--cont-batching",
            "--parallel", str(c.parallel),
            "--log-disable",
        ]

    # ------------------------------------------------------------------
    async def __aenter__(self) -> InferenceSupervisor:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def start(self) -> None:
        if not self.config.spawn_llama:
            log.info("llama-server spawning disabled, using %s", self.config.llama_url)
            return
        self._stopping = False
        await self._spawn()
        self._watcher = asyncio.create_task(self._watch())

    async def _spawn(self) -> None:
        command = self.command()
        log.info("starting llama-server: %s", shlex.join(command))
        self._state = STARTING
        self.ready.clear()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._state = CRASHED
            raise SupervisorError(f"cannot launch {command[0]}: {exc}") from exc
        log.info("llama-server started (pid %d)", self._process.pid)
        for stream, label in ((self._process.stdout, "stdout"), (self._process.stderr, "stderr")):
            if stream is not None:
                self._pumps.add(asyncio.create_task(self._pump(stream, label)))
        self._probe = asyncio.create_task(self._probe_health(self._process))

    def _mark_ready(self) -> None:
        if self.ready.is_set():
            return
        self._state = RUNNING
        self.ready.set()
        log.info("llama-server is ready")

    async def _pump(self, stream: asyncio.StreamReader, label: str) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            llama_log.info("[%s] %s", label, text)
            if LLAMA_READY_MARKER in text:
                self._mark_ready()

    async def _probe_health(self, proc: asyncio.subprocess.Process) -> None:
        """Poll llama-server's /health until it answers 200 or *proc* exits."""
        async with httpx.AsyncClient(base_url=self.config.llama_url, timeout=2.0) as http:
            while proc.returncode is None and not self.ready.is_set():
                try:
                    resp = await http.get("/health")
                    if resp.status_code == 200 and proc.returncode is None:
                        self._mark_ready()
                        return
                except httpx.HTTPError:
                    pass
                await asyncio.sleep(PROBE_INTERVAL_S)

    async def _cancel_probe(self) -> None:
        if self._probe is not None:
            self._probe.cancel()
            await asyncio.wait([self._probe])
            self._probe = None

    async def _drain_pumps(self) -> None:
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        self._pumps.clear()

    async def _watch(self) -> None:
        proc = self._process
        while proc is not None:
            code = await proc.wait()
            await self._cancel_probe()
            await self._drain_pumps()
            if self._stopping:
                return
            log.error("llama-server exited unexpectedly with code %s", code)
            self._state = CRASHED
            self.ready.clear()
            if not self.config.restart_on_crash or self.restarts >= self.config.max_restarts:
                log.error("llama-server will not be restarted (%d restart(s) used)", self.restarts)
                return
            self.restarts += 1
            delay = RESTART_DELAY_S * self.restarts
            log.warning(
                "restarting llama-server in %.0fs (attempt %d/%d)",
                delay, self.restarts, self.config.max_restarts,
            )
            await asyncio.sleep(delay)
            if self._stopping:
                return
            try:
                await self._spawn()
            except SupervisorError as exc:
                log.error("%s", exc)
                return
            proc = self._process

    async def wait_ready(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self.ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        self._stopping = True
        if self._watcher is not None:
            self._watcher.cancel()
            await asyncio.wait([self._watcher])
            self._watcher = None
        proc = self._process
        if proc is not None and proc.returncode is None:
            log.info("stopping llama-server (pid %d)", proc.pid)
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), TERMINATE_GRACE_S)
            except asyncio.TimeoutError:
                log.warning("llama-server ignored SIGTERM, killing")
                proc.kill()
                await proc.wait()
        await self._cancel_probe()
        await self._drain_pumps()
        if self.config.spawn_llama:
            self._state = STOPPED
        self.ready.clear()
