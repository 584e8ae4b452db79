"""Server configuration: defaults < config file < environment < CLI flags."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from openchatmobile.protocol import DEFAULT_HOST, DEFAULT_LLAMA_PORT, DEFAULT_PORT

log = logging.getLogger(__name__)

CONFIG_FILENAME = "openchatmobile.config.json"
ENV_PREFIX = "OPENCHATMOBILE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """A configuration value could not be coerced to its field type."""


@dataclass(frozen=True)
class ServerConfig:
    port: int = DEFAULT_PORT
    llama_port: int = DEFAULT_LLAMA_PORT
    host: str = DEFAULT_HOST
    model: str = "./models/Llama-3.2-1B-Instruct-Q4_K_M.gguf"
    ctx_size: int = 4096
    gpu_layers: int = 20
    parallel: int = 4
    log_file: str = "./logs/openchatmobile.log"
    verbose: bool = False

    llama_binary: str = "./bin/llama-server"
    models_dir: str = "./models"
    frontend_dir: str = "./frontend"

    # supervision / relay tuning
    spawn_llama: bool = True
    restart_on_crash: bool = True
    max_restarts: int = 3
    stream_timeout: float = 120.0
    ping_interval: float = 30.0

    @property
    def llama_url(self) -> str:
        host = self.host
        if host in ("", "0.0.0.0", "::"):
            host = "127.0.0.1"
        return f"http://{host}:{self.llama_port}"

    def public(self) -> dict:
        """The subset reported by the health endpoint."""
        return {
            "port": self.port,
            "wsPort": self.port,
            "llamaPort": self.llama_port,
            "model": self.model,
            "host": self.host,
            "ctxSize": self.ctx_size,
            "gpuLayers": self.gpu_layers,
            "parallel": self.parallel,
        }

    def to_dict(self) -> dict:
        return asdict(self)


def default_config_path() -> Path:
    return Path(os.environ.get(ENV_PREFIX + "CONFIG", CONFIG_FILENAME))


def _coerce(name: str, default: Any, value: Any) -> Any:
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(value)
        return type(default)(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {name!r}: {value!r}") from exc


def load_config_file(path: Path | str | None = None) -> dict:
    """Read the persisted config file; missing or unreadable files give ``{}``."""
    path = Path(path) if path is not None else default_config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("error loading configuration from %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        log.warning("ignoring configuration file %s: not a JSON object", path)
        return {}
    return data


def save_config(data: Mapping[str, Any], path: Path | str | None = None) -> Path:
    path = Path(path) if path is not None else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(dict(data), indent=2) + "\n", encoding="utf-8")
    log.info("configuration saved to %s", path)
    return path


def _env_values(environ: Mapping[str, str]) -> dict:
    values = {}
    for f in fields(ServerConfig):
        key = ENV_PREFIX + f.name.upper()
        if key in environ:
            values[f.name] = environ[key]
    return values


def resolve_config(
    overrides: Mapping[str, Any] | None = None,
    path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> ServerConfig:
    """Merge every configuration layer into a :class:`ServerConfig`.

    ``None`` values in *overrides* mean "not given" and are skipped, which
    lets argparse namespaces be passed straight through.
    """
    defaults = ServerConfig()
    known = {f.name for f in fields(ServerConfig)}
    merged: dict[str, Any] = {}

    for key, value in load_config_file(path).items():
        if key not in known:
            log.warning("ignoring unknown configuration key %r", key)
            continue
        merged[key] = value

    merged.update(_env_values(os.environ if environ is None else environ))

    for key, value in (overrides or {}).items():
        if key in known and value is not None:
            merged[key] = value

    coerced = {
        key: _coerce(key, getattr(defaults, key), value)
        for key, value in merged.items()
    }
    return ServerConfig(**coerced)
