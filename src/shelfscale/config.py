from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence


@dataclass
class SerialConfig:
    port: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    timeout: float = 3.0
    command: str = "AMPLITUDES"
    command_terminator: str = "\r"
    frame_delimiter: str = "\n"
    reset_delay: float = 2.0


@dataclass
class AcquisitionConfig:
    poll_interval: float = 5.0
    cell_count: int = 36
    operator: str = "divide"  # divide | multiply
    stats_log_interval: float = 60.0


@dataclass
class StoreConfig:
    backend: str = "sqlite"  # sqlite | memory
    path: Path = Path("data/app.db")


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class ProductConfig:
    name: str
    unit_weight: float
    from_cell: int
    to_cell: int
    warning: int = 0
    alarm: int = 0

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "ProductConfig":
        if "name" not in data or "from" not in data or "to" not in data:
            raise ValueError("products entries require fields 'name', 'from', and 'to'")
        from_cell = int(data["from"])
        to_cell = int(data["to"])
        if from_cell < 1 or to_cell < from_cell:
            raise ValueError(f"Product '{data['name']}' has an invalid cell range {from_cell}..{to_cell}")
        return ProductConfig(
            name=str(data["name"]),
            unit_weight=float(data.get("unit_weight", 0.0)),
            from_cell=from_cell,
            to_cell=to_cell,
            warning=int(data.get("warning", 0)),
            alarm=int(data.get("alarm", 0)),
        )


@dataclass
class ScaleConfig:
    serial: SerialConfig = field(default_factory=SerialConfig)
    acquisition: AcquisitionConfig = field(default_factory=AcquisitionConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    products: List[ProductConfig] = field(default_factory=list)

    @property
    def cell_ids(self) -> List[int]:
        return list(range(1, self.acquisition.cell_count + 1))


# Environment variables understood by the deployed service, mapped to dotted keys.
ENV_KEYS: Dict[str, str] = {
    "PORT_NAME": "serial.port",
    "BAUD_RATE": "serial.baudrate",
    "DB_PATH": "store.path",
    "API_PORT": "api.port",
    "POLL_INTERVAL": "acquisition.poll_interval",
    "LOAD_CELL_COUNT": "acquisition.cell_count",
}


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(
    path: Path | str | None = None,
    overrides: Sequence[str] | None = None,
    env: Optional[Mapping[str, str]] = None,
) -> ScaleConfig:
    """
    Build the service configuration.

    Sources are layered: built-in defaults, then the optional JSON file, then
    environment variables (see `ENV_KEYS`), then dotted `key=value` overrides, e.g.:
        ["serial.timeout=5", "acquisition.cell_count=12"]
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    env_data: Dict[str, Any] = {}
    for name, dotted_key in ENV_KEYS.items():
        raw = (env if env is not None else os.environ).get(name)
        if raw:
            _assign_nested(env_data, dotted_key, _coerce_value(raw.strip()))
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(_merge(data, env_data), override_data)

    serial_data = merged.get("serial") or {}
    acq_data = merged.get("acquisition") or {}
    store_data = merged.get("store") or {}
    api_data = merged.get("api") or {}
    cfg = ScaleConfig(
        serial=SerialConfig(
            port=str(serial_data.get("port", "/dev/ttyUSB0")),
            baudrate=int(serial_data.get("baudrate", 115200)),
            timeout=float(serial_data.get("timeout", 3.0)),
            command=str(serial_data.get("command", "AMPLITUDES")),
            command_terminator=str(serial_data.get("command_terminator", "\r")),
            frame_delimiter=str(serial_data.get("frame_delimiter", "\n")),
            reset_delay=float(serial_data.get("reset_delay", 2.0)),
        ),
        acquisition=AcquisitionConfig(
            poll_interval=float(acq_data.get("poll_interval", 5.0)),
            cell_count=int(acq_data.get("cell_count", 36)),
            operator=str(acq_data.get("operator", "divide")),
            stats_log_interval=float(acq_data.get("stats_log_interval", 60.0)),
        ),
        store=StoreConfig(
            backend=str(store_data.get("backend", "sqlite")).lower(),
            path=Path(store_data.get("path", "data/app.db")),
        ),
        api=ApiConfig(
            host=str(api_data.get("host", "0.0.0.0")),
            port=int(api_data.get("port", 3001)),
            cors_origins=[str(origin) for origin in api_data.get("cors_origins", ["*"])],
        ),
        products=[ProductConfig.from_mapping(item) for item in merged.get("products") or []],
    )
    if cfg.acquisition.cell_count < 1:
        raise ValueError("acquisition.cell_count must be at least 1")
    if cfg.serial.timeout <= 0:
        raise ValueError("serial.timeout must be positive")
    if cfg.store.backend not in {"sqlite", "memory"}:
        raise ValueError(f"Unsupported store backend '{cfg.store.backend}'")
    if cfg.acquisition.operator.lower() not in {"divide", "multiply"}:
        raise ValueError(f"Unsupported calibration operator '{cfg.acquisition.operator}'")
    return cfg


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
