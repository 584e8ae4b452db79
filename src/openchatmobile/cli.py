"""openchatmobile — command-line manager for the chat relay server."""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path

import psutil
from rich.console import Console

from openchatmobile import __version__
from openchatmobile.config import ServerConfig, default_config_path, load_config_file, resolve_config, save_config
from openchatmobile.logs import configure_logging, line_level, tail, truncate

console = Console()

COMMANDS = ("start", "stop", "restart", "status", "logs", "config", "clean-logs")
PID_FILENAME = ".openchatmobile.pid"

LEVEL_STYLES = {
    "CRITICAL": "magenta",
    "ERROR": "red",
    "WARNING": "yellow",
    "INFO": "green",
    "DEBUG": "cyan",
}

# argparse dest → flag, for re-launching the server as a daemon
_SERVER_FLAGS = {
    "port": "--port",
    "llama_port": "--llama-port",
    "host": "--host",
    "model": "--model",
    "ctx_size": "--ctx-size",
    "gpu_layers": "--gpu-layers",
    "parallel": "--parallel",
    "log_file": "--log-file",
    "llama_binary": "--llama-binary",
    "models_dir": "--models-dir",
    "frontend_dir": "--frontend-dir",
}
_CONFIG_KEYS = tuple(_SERVER_FLAGS) + ("verbose", "spawn_llama")


def build_parser(commands: bool = True) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openchatmobile" if commands else "python -m openchatmobile.server",
        description="OpenChatMobile: llama-server chat relay manager",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    if commands:
        parser.add_argument("command", nargs="?", default="start", choices=COMMANDS)
        parser.add_argument("action", nargs="?", choices=("set",), help="config set: persist the given flags")

    # None means "not given", so lower-precedence layers win
    parser.add_argument("-p", "--port", type=int)
    parser.add_argument("--llama-port", type=int)
    parser.add_argument("--host")
    parser.add_argument("-m", "--model", help="path to the GGUF model")
    parser.add_argument("--ctx-size", type=int)
    parser.add_argument("--gpu-layers", type=int)
    parser.add_argument("--parallel", type=int)
    parser.add_argument("--log-file")
    parser.add_argument("--llama-binary", help="path to the llama-server binary")
    parser.add_argument("--models-dir")
    parser.add_argument("--frontend-dir")
    parser.add_argument("-v", "--verbose", action="store_const", const=True, default=None)
    parser.add_argument(
        "--no-llama", dest="spawn_llama", action="store_const", const=False, default=None,
        help="do not spawn llama-server; use one that is already running",
    )
    parser.add_argument("--config", dest="config_path", help="config file path")

    if commands:
        parser.add_argument("--foreground", action="store_true", help="run in the foreground")
        parser.add_argument("--pid-file", default=os.environ.get("OPENCHATMOBILE_PID_FILE", PID_FILENAME))
        parser.add_argument("-f", "--follow", action="store_true", help="logs: follow new lines")
        parser.add_argument("-n", "--lines", type=int, default=50, help="logs: lines to show")
    return parser


def _overrides(args: argparse.Namespace) -> dict:
    return {key: getattr(args, key, None) for key in _CONFIG_KEYS}


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    return resolve_config(_overrides(args), args.config_path)


def run_server(config: ServerConfig) -> int:
    """Run the relay server in this process until interrupted."""
    import uvicorn

    from openchatmobile.server.app import create_app

    configure_logging(config.log_file, config.verbose)
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level="debug" if config.verbose else "info",
    )
    return 0


# --- PID file ----------------------------------------------------------------

def read_pid(pid_file: str | Path) -> int | None:
    try:
        pid = int(Path(pid_file).read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if pid > 0 else None


def is_running(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False


# --- Commands ----------------------------------------------------------------

def _banner(config: ServerConfig) -> None:
    console.print("\n[cyan]=== OpenChatMobile Server ===[/cyan]")
    console.print(f"[green]✓ Frontend: http://localhost:{config.port}[/green]")
    console.print(f"[green]✓ API: http://localhost:{config.port}/api/health[/green]")
    console.print(f"[green]✓ WebSocket: ws://localhost:{config.port}/ws[/green]")
    console.print(f"[green]✓ LLaMA Server: {config.llama_url}[/green]")
    console.print("[cyan]=============================[/cyan]\n")


def cmd_start(args: argparse.Namespace, config: ServerConfig) -> int:
    pid = read_pid(args.pid_file)
    if pid and is_running(pid):
        console.print(f"[yellow]Server already running (PID: {pid})[/yellow]")
        return 1
    _banner(config)
    if args.foreground:
        return run_server(config)

    argv = [sys.executable, "-m", "openchatmobile.server"]
    for key, flag in _SERVER_FLAGS.items():
        argv += [flag, str(getattr(config, key))]
    if config.verbose:
        argv.append("--verbose")
    if not config.spawn_llama:
        argv.append("--no-llama")
    if args.config_path:
        argv += ["--config", args.config_path]

    child = subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    Path(args.pid_file).write_text(str(child.pid))
    console.print(f"[green]Server started as daemon (PID: {child.pid})[/green]")
    console.print(f"[cyan]Logs: {config.log_file}[/cyan]")
    console.print('[dim]Use "openchatmobile logs" to view logs[/dim]')
    console.print('[dim]Use "openchatmobile stop" to stop the server[/dim]')
    return 0


def cmd_stop(args: argparse.Namespace, config: ServerConfig) -> int:
    pid = read_pid(args.pid_file)
    if pid is None:
        console.print("[yellow]No running server found[/yellow]")
        return 0
    console.print(f"[yellow]Stopping server (PID: {pid})...[/yellow]")
    try:
        proc = psutil.Process(pid)
        proc.terminate()
        proc.wait(timeout=10)
    except psutil.NoSuchProcess:
        console.print("[yellow]Server was not running[/yellow]")
    except psutil.TimeoutExpired:
        console.print("[red]Server did not stop within 10s[/red]")
        return 1
    except psutil.Error as exc:
        console.print(f"[red]Failed to stop server: {exc}[/red]")
        return 1
    else:
        console.print("[green]Server stopped successfully[/green]")
    Path(args.pid_file).unlink(missing_ok=True)
    return 0


def cmd_restart(args: argparse.Namespace, config: ServerConfig) -> int:
    cmd_stop(args, config)
    time.sleep(1)
    return cmd_start(args, config)


def cmd_status(args: argparse.Namespace, config: ServerConfig) -> int:
    pid = read_pid(args.pid_file)
    if pid and is_running(pid):
        console.print(f"[green]✓ Server is running (PID: {pid})[/green]")
        console.print("\n[cyan]Current configuration:[/cyan]")
        console.print(f"   Backend: http://localhost:{config.port}")
        console.print(f"   LLaMA: {config.llama_url}")
        console.print(f"   WebSocket: ws://localhost:{config.port}/ws")
        console.print(f"   Model: {config.model}")
        console.print(f"   Context: {config.ctx_size} tokens")
        console.print(f"   GPU Layers: {config.gpu_layers}")
        console.print(f"   Log file: {config.log_file}")
        return 0
    console.print("[red]✗ Server is not running[/red]")
    if pid:
        Path(args.pid_file).unlink(missing_ok=True)
        console.print("[yellow]PID file cleaned up[/yellow]")
    return 1


def _print_log_line(line: str) -> None:
    style = LEVEL_STYLES.get(line_level(line) or "")
    console.print(line, style=style, markup=False, highlight=False)


def cmd_logs(args: argparse.Namespace, config: ServerConfig) -> int:
    path = Path(config.log_file)
    if not path.exists():
        console.print("[yellow]No logs available[/yellow]")
        return 0
    for line in tail(path, args.lines):
        _print_log_line(line)
    if not args.follow:
        return 0

    console.print("[cyan]Following logs (Ctrl+C to exit)...[/cyan]")
    try:
        with open(path, encoding="utf-8", errors="replace") as fh:
            fh.seek(0, os.SEEK_END)
            while True:
                line = fh.readline()
                if not line:
                    time.sleep(0.5)
                    continue
                if line.strip():
                    _print_log_line(line.rstrip("\n"))
    except KeyboardInterrupt:
        pass
    return 0


def cmd_config(args: argparse.Namespace, config: ServerConfig) -> int:
    path = Path(args.config_path) if args.config_path else default_config_path()
    if args.action == "set":
        given = {k: v for k, v in _overrides(args).items() if v is not None}
        if not given:
            console.print("[yellow]Nothing to set; pass options such as --port 4000[/yellow]")
            return 1
        saved = {**load_config_file(path), **given}
        save_config(saved, path)
        console.print(f"[green]Configuration saved to {path}[/green]")
        console.print("[green]Restart the server to apply changes[/green]")
        return 0
    console.print("[cyan]Current configuration:[/cyan]")
    console.print_json(data=config.to_dict())
    console.print(f"\n[dim]Config file: {path}[/dim]")
    return 0


def cmd_clean_logs(args: argparse.Namespace, config: ServerConfig) -> int:
    if truncate(config.log_file):
        console.print("[green]Logs cleaned successfully[/green]")
    else:
        console.print("[yellow]No log file found[/yellow]")
    return 0


HANDLERS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "status": cmd_status,
    "logs": cmd_logs,
    "config": cmd_config,
    "clean-logs": cmd_clean_logs,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        return 2
    return HANDLERS[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())
