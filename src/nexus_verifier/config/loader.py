"""
nexus-verifier — runtime config loader.

Purpose
- Resolve the effective config from five layers, lowest precedence first:
  built-in defaults, ``verifier.toml``, the selected profile overlay,
  ``NEXUS_VERIFIER_*`` environment variables, and CLI overrides.
- Record which layer last set every leaf so ``nexus-verifier config --explain``
  can show where a value came from.

Environment variables are derived from the default config: every scalar or
string-list leaf ``section.key`` binds ``NEXUS_VERIFIER_SECTION_KEY`` and is
coerced to the default's type. Relative path fields resolve against the
directory holding the config file (or the working directory when none is used).
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

from nexus_verifier.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "verifier.toml"
ENV_PREFIX: Final[str] = "NEXUS_VERIFIER_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

Leaf = tuple[tuple[str, ...], object]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


class ConfigLayer(StrEnum):
    DEFAULTS = "defaults"
    FILE = "file"
    PROFILE = "profile"
    ENV = "env"
    CLI = "cli"


@dataclass(frozen=True, slots=True)
class LoadedConfig:
    """A validated config plus the provenance of each leaf."""

    config: dict[str, Any]
    config_file: Path | None
    profile: str | None
    origins: Mapping[str, ConfigLayer] = field(default_factory=dict)

    def origin_of(self, dotted_key: str) -> ConfigLayer:
        return self.origins.get(dotted_key, ConfigLayer.DEFAULTS)

    def overridden(self) -> dict[str, ConfigLayer]:
        """Leaves not left at their built-in default, keyed by dotted path."""

        return {
            key: layer
            for key, layer in sorted(self.origins.items())
            if layer is not ConfigLayer.DEFAULTS
        }


def resolve_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> LoadedConfig:
    env = dict(os.environ) if environ is None else dict(environ)
    cli = dict(cli_overrides or {})
    source = _locate(config_path)
    file_layer = _read_toml(source, required=config_path is not None)
    selected = _select_profile(profile, cli, env)

    config = assert_valid_config(merge_config(default_config(), file_layer))
    layers: list[tuple[ConfigLayer, Mapping[str, object]]] = [
        (ConfigLayer.FILE, {k: v for k, v in file_layer.items() if k != "profiles"}),
    ]
    if selected is not None:
        config = apply_profile_overlay(config, selected)
        layers.append((ConfigLayer.PROFILE, config["profiles"][selected]))

    env_layer = _env_layer(config, env)
    cli_layer = _cli_layer(cli)
    layers.extend([(ConfigLayer.ENV, env_layer), (ConfigLayer.CLI, cli_layer)])
    config = assert_valid_config(
        merge_config(merge_config(config, env_layer), cli_layer), active_profile=selected
    )

    base_dir = source.parent if source.is_file() else Path.cwd().resolve()
    config = assert_valid_config(
        normalize_paths(config, base_dir=base_dir), active_profile=selected
    )
    return LoadedConfig(
        config=config,
        config_file=source if source.is_file() else None,
        profile=selected,
        origins=_origins(config, layers),
    )


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config; see ``resolve_config`` for provenance."""

    return resolve_config(
        config_path, profile=profile, cli_overrides=cli_overrides, environ=environ
    ).config


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Make every configured path field absolute, including inside profile overlays."""

    result = merge_config({}, config)
    targets: list[tuple[str, ...]] = list(PATH_FIELDS)
    profiles = result.get("profiles")
    if isinstance(profiles, Mapping):
        targets.extend(
            ("profiles", name, *suffix)
            for name in sorted(profiles)
            if isinstance(profiles[name], Mapping)
            for suffix in PATH_FIELDS
        )
    for path in targets:
        parent = _walk(result, path[:-1])
        if isinstance(parent, dict) and isinstance(parent.get(path[-1]), str):
            parent[path[-1]] = _absolute(parent[path[-1]], base_dir)
    return result


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` suitable for logs and ``config`` output."""

    return dump_redacted(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


def _locate(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, cli: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = cli.get("profile")
        if candidate is not None and not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    if candidate is None:
        candidate = env.get(PROFILE_ENV)
    if candidate is None:
        return None
    return str(candidate).strip() or None


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, current in _leaves(config):
        if path[0] == "profiles":
            continue
        coerce = _coercer_for(current)
        name = env_name_for_path(path)
        if coerce is None or name not in env:
            continue
        try:
            value = coerce(env[name].strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _assign(layer, path, value)
    return layer


def _cli_layer(cli: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(cli):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = cli[key]
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def _origins(
    config: Mapping[str, object], layers: list[tuple[ConfigLayer, Mapping[str, object]]]
) -> dict[str, ConfigLayer]:
    origins = {
        ".".join(path): ConfigLayer.DEFAULTS
        for path, _value in _leaves(config)
        if path[0] != "profiles"
    }
    for layer, payload in layers:
        for path, _value in _leaves(payload):
            origins[".".join(path)] = layer
    return origins


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _to_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _to_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _to_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _to_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _coercer_for(current: object) -> Callable[[str], object] | None:
    # bool before int: bool is an int subclass.
    if isinstance(current, bool):
        return _to_bool
    if isinstance(current, int):
        return _to_int
    if isinstance(current, float):
        return _to_float
    if isinstance(current, str):
        return str
    if isinstance(current, list) and all(isinstance(item, str) for item in current):
        return _to_list
    return None


# ---------------------------------------------------------------------------
# Nested mapping helpers
# ---------------------------------------------------------------------------


def _leaves(payload: Mapping[str, object], prefix: tuple[str, ...] = ()) -> Iterator[Leaf]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping) and value:
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    for part in path[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[path[-1]] = value


def _walk(payload: object, path: tuple[str, ...]) -> object:
    for part in path:
        if not isinstance(payload, Mapping):
            return None
        payload = payload.get(part)
    return payload


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLayer",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "LoadedConfig",
    "PROFILE_ENV",
    "dump_effective_config",
    "effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
    "resolve_config",
]
