"""Configuration loading, merging, and interactive creation."""

from __future__ import annotations

import logging
import os
import pathlib
import tomllib


logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.toml"

MIN_SCAN_DEPTH = 1
MAX_SCAN_DEPTH = 20

DEFAULT_EXCLUDE_PATTERNS: list[str] = [
    "node_modules",
    ".git",
    ".DS_Store",
    "Thumbs.db",
    ".thumbnails",
]

_DEFAULTS: dict[str, object] = {
    "db_path": None,
    "log_file": None,
    "scan_depth": 10,
    "watch_depth": 3,
    "watch_interval": 1.0,
    "watch": True,
    "exclude": [],
}

_PATH_KEYS = {"db_path", "log_file"}
_INT_KEYS = {"scan_depth", "watch_depth"}
_FLOAT_KEYS = {"watch_interval"}
_BOOL_KEYS = {"watch"}
_LIST_KEYS = {"exclude"}


def config_dir() -> pathlib.Path:
    """Return the photosift config directory, creating it if needed."""
    base = pathlib.Path(os.environ.get("XDG_CONFIG_HOME", "~/.config")).expanduser()
    d = base / "photosift"
    d.mkdir(parents=True, exist_ok=True)
    return d


def clamp_scan_depth(depth: int) -> int:
    """Clamp a scan depth into the supported range."""
    return max(MIN_SCAN_DEPTH, min(MAX_SCAN_DEPTH, int(depth)))


def load_config(directory: pathlib.Path | None = None) -> dict:
    """Load config.toml and return its contents as a dict.

    Returns {} if no file exists or on parse error.
    """
    if directory is None:
        directory = config_dir()
    path = directory / CONFIG_FILENAME
    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text())
    except (tomllib.TOMLDecodeError, OSError, UnicodeDecodeError) as exc:
        logger.warning(f"Ignoring unreadable config {path}: {exc}")
        return {}


def merge_config_into_args(args, config: dict) -> None:
    """Three-layer merge: CLI > config > hardcoded defaults.

    Mutates *args* in place.
    """
    for key in _PATH_KEYS:
        if getattr(args, key, None) is not None:
            continue
        cfg_val = config.get(key)
        setattr(args, key, pathlib.Path(cfg_val).expanduser() if cfg_val else None)

    for key in _INT_KEYS:
        if getattr(args, key, None) is not None:
            continue
        cfg_val = config.get(key)
        try:
            setattr(args, key, int(cfg_val) if cfg_val is not None else _DEFAULTS[key])
        except (TypeError, ValueError):
            logger.warning(f"Invalid {key} in config: {cfg_val!r}")
            setattr(args, key, _DEFAULTS[key])

    if args.scan_depth is not None:
        args.scan_depth = clamp_scan_depth(args.scan_depth)

    for key in _FLOAT_KEYS:
        if getattr(args, key, None) is not None:
            continue
        cfg_val = config.get(key)
        try:
            setattr(args, key, float(cfg_val) if cfg_val is not None else _DEFAULTS[key])
        except (TypeError, ValueError):
            logger.warning(f"Invalid {key} in config: {cfg_val!r}")
            setattr(args, key, _DEFAULTS[key])

    for key in _BOOL_KEYS:
        if getattr(args, key, None) is not None:
            continue
        cfg_val = config.get(key)
        setattr(args, key, bool(cfg_val) if cfg_val is not None else _DEFAULTS[key])

    # list fields: CLI values first, then config additions
    for key in _LIST_KEYS:
        cli_val = getattr(args, key, None) or []
        cfg_val = config.get(key) or []
        setattr(args, key, cli_val + [v for v in cfg_val if v not in cli_val])


def create_config_interactive(
    directory: pathlib.Path | None = None,
    input_fn=input,
    print_fn=print,
) -> pathlib.Path:
    """Interactively create or update config.toml.

    Returns the path to the written config file.
    """
    if directory is None:
        directory = config_dir()
    directory.mkdir(parents=True, exist_ok=True)

    existing = load_config(directory)

    settings: list[tuple[str, str, str]] = [
        ("db_path", "Library database path (empty for default)", ""),
        ("log_file", "Log file (empty for none)", ""),
        ("scan_depth", "Maximum scan depth (1-20)", str(_DEFAULTS["scan_depth"])),
        ("watch_depth", "Maximum watch depth", str(_DEFAULTS["watch_depth"])),
        ("watch_interval", "Watch poll interval in seconds", str(_DEFAULTS["watch_interval"])),
        ("watch", "Watch root directory for changes (true/false)", str(_DEFAULTS["watch"]).lower()),
    ]

    result: dict[str, object] = {}

    for key, label, hardcoded_default in settings:
        default = str(existing.get(key, hardcoded_default))
        value = input_fn(f"  {label} [{default}]: ").strip()
        if not value:
            value = default
        if key in _BOOL_KEYS:
            result[key] = value.lower() in ("true", "1", "yes")
        elif key in _INT_KEYS:
            try:
                result[key] = int(value)
            except ValueError:
                result[key] = _DEFAULTS[key]
        elif key in _FLOAT_KEYS:
            try:
                result[key] = float(value)
            except ValueError:
                result[key] = _DEFAULTS[key]
        elif value:
            result[key] = value

    if "scan_depth" in result:
        result["scan_depth"] = clamp_scan_depth(result["scan_depth"])

    exclude_default = ", ".join(existing.get("exclude", []))
    exclude_val = input_fn(f"  Extra exclusion substrings, comma separated [{exclude_default}]: ").strip()
    if not exclude_val:
        exclude_val = exclude_default
    patterns = [p.strip() for p in exclude_val.split(",") if p.strip()]
    if patterns:
        result["exclude"] = patterns

    path = directory / CONFIG_FILENAME
    path.write_text(_to_toml(result))
    print_fn(f"Configuration saved to {path}")
    return path


def _to_toml(data: dict) -> str:
    """Serialize a flat dict to TOML format."""
    lines: list[str] = []
    for key, value in data.items():
        if isinstance(value, bool):
            lines.append(f"{key} = {str(value).lower()}")
        elif isinstance(value, list):
            items = ", ".join(f'"{v}"' for v in value)
            lines.append(f"{key} = [{items}]")
        elif isinstance(value, str):
            lines.append(f'{key} = "{value}"')
        elif value is None:
            continue
        else:
            lines.append(f"{key} = {value}")
    return "\n".join(lines) + "\n" if lines else ""
