from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, MutableMapping, Sequence

from sourcevault.config.models import (
    AppConfig,
    ConfigLoadRequest,
)

logger = logging.getLogger(__name__)


def _read_yaml_config(path: Path) -> dict[str, Any]:
    try:
        import yaml  # type: ignore[import-not-found]
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "Missing dependency: PyYAML is required to load the YAML config file. Install 'PyYAML'."
        ) from e

    if not path.exists():
        logger.info("Config file not found, using defaults. path=%s", path)
        return {}

    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping, got: {type(data).__name__}")
    return data


def _load_dotenv_if_present(dotenv_path: Path) -> None:
    try:
        from dotenv import load_dotenv  # type: ignore[import-not-found]
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "Missing dependency: python-dotenv is required to load .env. Install 'python-dotenv'."
        ) from e

    if not dotenv_path.exists():
        return
    load_dotenv(dotenv_path=dotenv_path, override=False)


def _env_var_name_to_segments(env_var_name: str, prefix: str) -> Sequence[str]:
    remainder = env_var_name[len(prefix) :]
    parts = [p for p in remainder.split("__") if p]
    if not parts:
        raise ValueError(f"Invalid environment variable override name: {env_var_name}")
    return [p.lower() for p in parts]


def _get_parent_mapping(config: MutableMapping[str, Any], path: Sequence[str]) -> MutableMapping[str, Any]:
    cur: MutableMapping[str, Any] = config
    for segment in path[:-1]:
        if segment not in cur:
            if segment not in _known_sections():
                dotted = ".".join(path)
                raise KeyError(f"Unknown configuration key path: {dotted}")
            cur[segment] = {}
        next_value = cur[segment]
        if not isinstance(next_value, dict):
            dotted = ".".join(path)
            raise TypeError(f"Configuration key path does not point to a mapping: {dotted}")
        cur = next_value
    return cur


def _known_sections() -> set[str]:
    return set(AppConfig.model_fields.keys())


def _known_leaves(section: str) -> set[str]:
    field = AppConfig.model_fields.get(section)
    if field is None or field.annotation is None:
        return set()
    return set(getattr(field.annotation, "model_fields", {}).keys())


_SEQUENCE_KEYS = {"directories", "allow_patterns", "ignore_patterns"}


def _parse_override_value(leaf: str, value: str) -> Any:
    # Sequences are written as comma separated values, e.g. SOURCEVAULT__CACHE__DIRECTORIES=/src,/docs
    if leaf in _SEQUENCE_KEYS:
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _apply_env_overrides(config: MutableMapping[str, Any], env_prefix: str) -> None:
    for name, value in os.environ.items():
        if not name.startswith(env_prefix):
            continue

        segments = _env_var_name_to_segments(name, env_prefix)
        parent = _get_parent_mapping(config, segments)
        leaf = segments[-1]
        dotted = ".".join(segments)

        if leaf not in parent and (len(segments) != 2 or leaf not in _known_leaves(segments[0])):
            raise KeyError(f"Unknown configuration key path: {dotted}")

        # We allow overriding any value; Pydantic will handle type coercion/validation later.
        parent[leaf] = _parse_override_value(leaf, value)


class YamlConfigLoader:
    def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        yaml_path = Path(request.yaml_path)
        config = _read_yaml_config(yaml_path)

        if request.dotenv_path is not None:
            _load_dotenv_if_present(Path(request.dotenv_path))

        _apply_env_overrides(config, request.env_prefix)
        return AppConfig.model_validate(config)
