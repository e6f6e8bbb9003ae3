"""Persistent defaults for the command line.

Stored as a JSON file in the user's XDG config directory:

    ~/.config/storelistings/config.json

Schema (every key optional)::

    {
      "market": "US",
      "language": "en",
      "device_family": "Desktop",
      "architecture": "x64",
      "os_version": "10.0.26100.0",
      "branch": "ge_release",
      "flight_ring": "Retail",
      "flighting_branch_name": "Retail",
      "workers": 4,
      "timeout": 30,
      "ssl_verify": true,
      "ca_cert": null
    }

Sync cookies and other credentials are never written here.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path

from storelistings.models.download import DEFAULT_OS_VERSION, OSDescriptor
from storelistings.models.platform import DeviceFamily
from storelistings.models.version import Version

log = logging.getLogger(__name__)

_CONFIG_FILE = "config.json"


def config_dir() -> Path:
    """Return the storelistings config directory (not created)."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "storelistings"


def _config_path() -> Path:
    return config_dir() / _CONFIG_FILE


# ---------------------------------------------------------------------------
# Low-level read/write
# ---------------------------------------------------------------------------

def _load() -> dict:
    path = _config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        log.warning("Could not read config: %s", exc)
        return {}
    if not isinstance(data, dict):
        log.warning("Ignoring config %s: top level is not an object", path)
        return {}
    return data


def _save(data: dict) -> None:
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(data, indent=2, ensure_ascii=False),
        encoding="utf-8",
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Settings:
    market: str = "US"
    language: str = "en"
    device_family: str = DeviceFamily.DESKTOP.value
    architecture: str = "x64"
    os_version: str = str(DEFAULT_OS_VERSION)
    branch: str = "ge_release"
    flight_ring: str = "Retail"
    flighting_branch_name: str = "Retail"
    workers: int = 4
    timeout: float = 30
    ssl_verify: bool = True
    ca_cert: str | None = None

    def os_descriptor(self) -> OSDescriptor:
        return OSDescriptor(
            branch=self.branch,
            flight_ring=self.flight_ring,
            flighting_branch_name=self.flighting_branch_name,
            os_version=Version.try_parse(self.os_version) or DEFAULT_OS_VERSION,
            device_family=DeviceFamily.from_name(self.device_family),
            language=self.language,
            market=self.market,
        )


def load_settings() -> Settings:
    """Read stored settings; unknown keys and wrongly typed values are ignored."""
    raw = _load()
    defaults = Settings()
    values = {}
    for f in fields(Settings):
        if f.name not in raw:
            continue
        value = raw[f.name]
        default = getattr(defaults, f.name)
        if not _same_kind(value, default):
            log.warning("Ignoring config key %r: unexpected value %r", f.name, value)
            continue
        values[f.name] = value
    return Settings(**values)


def save_settings(settings: Settings) -> None:
    """Persist *settings*, preserving other config keys."""
    cfg = _load()
    cfg.update(asdict(settings))
    _save(cfg)


def set_setting(key: str, text: str) -> Settings:
    """Parse *text* as the value of *key*, persist it and return the new settings.

    Raises ``ValueError`` for an unknown key or a value of the wrong kind.
    """
    if key not in {f.name for f in fields(Settings)}:
        raise ValueError(f"Unknown setting {key!r}")
    default = getattr(Settings(), key)
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        value = text
    if isinstance(default, str) and not isinstance(value, str):
        value = text
    if not _same_kind(value, default):
        raise ValueError(f"Invalid value {text!r} for {key}")
    settings = replace(load_settings(), **{key: value})
    save_settings(settings)
    log.info("Saved %s = %r", key, value)
    return settings


def _same_kind(value, default) -> bool:
    if default is None:
        return value is None or isinstance(value, str)
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, type(default))
