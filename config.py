"""Player configuration file and environment settings."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from artnet import ARTNET_PORT

LOGGER = logging.getLogger("dmxrec.config")

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_FILE = BASE_DIR / "dmxrec.json"
DEFAULT_RECORDINGS_DIR = BASE_DIR / "recordings"

DEFAULT_FPS = 35.0
MIN_FPS = 1.0
MAX_FPS = 100.0
DEFAULT_IDLE_TIMEOUT = 3.0
DEFAULT_FADE_SECONDS = 1.0
DEFAULT_HTTP_PORT = 8050


def _parse_int_env(
    environ: Mapping[str, str], name: str, default: int, *, minimum: int, maximum: int
) -> int:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Invalid integer value '%s' for %s; using %s.", raw, name, default)
        return default
    return max(minimum, min(maximum, value))


def _parse_float_env(
    environ: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float,
    maximum: Optional[float] = None,
) -> float:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Invalid float value '%s' for %s; using %s.", raw, name, default)
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def coerce_bool(value: object) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return None


def _parse_bool_env(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    value = coerce_bool(raw)
    if value is None:
        LOGGER.warning("Invalid boolean value '%s' for %s; using %s.", raw, name, default)
        return default
    return value


@dataclass
class OutputConfig:
    universes: List[int]
    ip: Optional[str] = None
    port: int = ARTNET_PORT
    serial_port: Optional[str] = None
    serial_number: Optional[str] = None

    @property
    def target(self) -> str:
        if self.ip:
            return self.ip
        return self.serial_port or f"serial:{self.serial_number}"


@dataclass
class PlayerConfig:
    universes: List[int]
    outputs: List[OutputConfig] = field(default_factory=list)
    short_name: str = "dmxrec"
    long_name: str = "dmxrec - ArtNet Transceiver"

    def describe(self) -> Dict[str, Any]:
        return {
            "short_name": self.short_name,
            "long_name": self.long_name,
            "universes": list(self.universes),
            "outputs": [
                {"target": output.target, "universe": list(output.universes)}
                for output in self.outputs
            ],
        }


def _universe_list(raw: object, context: str) -> List[int]:
    if not isinstance(raw, list):
        raise ValueError(f"{context} must be a list of universe numbers")
    universes: List[int] = []
    for entry in raw:
        if isinstance(entry, bool) or not isinstance(entry, int):
            raise ValueError(f"{context} contains a non-integer universe: {entry!r}")
        if entry < 0 or entry > 255:
            raise ValueError(f"{context} universe {entry} must be between 0 and 255")
        universes.append(entry)
    return universes


def _parse_output(raw: object, index: int) -> OutputConfig:
    context = f"Output #{index + 1}"
    if not isinstance(raw, dict):
        raise ValueError(f"{context} must be an object")
    universes = _universe_list(raw.get("universe"), f"{context} 'universe'")

    ip = raw.get("ip")
    serial_port = raw.get("serial")
    serial_number = raw.get("serial_number")
    if not ip and not serial_port and not serial_number:
        raise ValueError(f"{context} needs an 'ip', 'serial' or 'serial_number' entry")

    port = raw.get("port", ARTNET_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ValueError(f"{context} has an invalid port: {port!r}")

    return OutputConfig(
        universes=universes,
        ip=str(ip) if ip else None,
        port=port,
        serial_port=str(serial_port) if serial_port else None,
        serial_number=str(serial_number) if serial_number else None,
    )


def parse_player_config(raw: Dict[str, Any]) -> PlayerConfig:
    if "universes" not in raw:
        raise ValueError("Configuration must include a list of input 'universes'")
    universes = _universe_list(raw["universes"], "'universes'")

    outputs_raw = raw.get("outputs", [])
    if not isinstance(outputs_raw, list):
        raise ValueError("Configuration 'outputs' must be a list")
    outputs = [_parse_output(entry, index) for index, entry in enumerate(outputs_raw)]

    config = PlayerConfig(universes=universes, outputs=outputs)
    if raw.get("short_name"):
        config.short_name = str(raw["short_name"])
    if raw.get("long_name"):
        config.long_name = str(raw["long_name"])
    return config


def load_player_config(config_path: Path) -> PlayerConfig:
    with config_path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a JSON object")
    return parse_player_config(raw)


@dataclass
class Settings:
    config_path: Path = DEFAULT_CONFIG_FILE
    recordings_dir: Path = DEFAULT_RECORDINGS_DIR
    fps: float = DEFAULT_FPS
    fade_seconds: float = DEFAULT_FADE_SECONDS
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    passthrough: bool = True
    bind_ip: str = "0.0.0.0"
    artnet_port: int = ARTNET_PORT
    http_host: str = "0.0.0.0"
    http_port: int = DEFAULT_HTTP_PORT


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    return Settings(
        config_path=Path(env.get("DMXREC_CONFIG", str(DEFAULT_CONFIG_FILE))),
        recordings_dir=Path(env.get("DMXREC_RECORDINGS_DIR", str(DEFAULT_RECORDINGS_DIR))),
        fps=_parse_float_env(env, "DMXREC_FPS", DEFAULT_FPS, minimum=MIN_FPS, maximum=MAX_FPS),
        fade_seconds=_parse_float_env(
            env, "DMXREC_FADE_SECONDS", DEFAULT_FADE_SECONDS, minimum=0.0
        ),
        idle_timeout=_parse_float_env(
            env, "DMXREC_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT, minimum=0.1
        ),
        passthrough=_parse_bool_env(env, "DMXREC_PASSTHROUGH", True),
        bind_ip=env.get("DMXREC_BIND_IP", "0.0.0.0"),
        artnet_port=_parse_int_env(
            env, "DMXREC_ARTNET_PORT", ARTNET_PORT, minimum=1, maximum=65535
        ),
        http_host=env.get("DMXREC_HTTP_HOST", "0.0.0.0"),
        http_port=_parse_int_env(
            env, "DMXREC_HTTP_PORT", DEFAULT_HTTP_PORT, minimum=1, maximum=65535
        ),
    )
