"""Configuration loading and deterministic merge order."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from realm_index.realm.paths import normalize_realm_url

MAX_LINK_DEPTH_CAP = 20
MAX_TOTAL_BYTES_PER_RESPONSE_CAP = 4 * 1024 * 1024
MAX_SEARCH_HITS_CAP = 1_000
MAX_FETCH_TIMEOUT_SECONDS = 120

DEFAULT_REALM_URL = "http://localhost/realm/"
DEFAULT_BASE_REALM_URL = "https://cardstack.com/base/"
DEFAULT_MODULE_EXTENSIONS = (".py",)
DEFAULT_IGNORE_FILES = (".monacoignore", ".gitignore")
DEFAULT_MAX_LINK_DEPTH = 5

RunnerMode = Literal["in-process", "queue"]
StoreMode = Literal["memory", "persistent"]
_RUNNER_MODES: tuple[str, ...] = ("in-process", "queue")
_STORE_MODES: tuple[str, ...] = ("memory", "persistent")


@dataclass(slots=True, frozen=True)
class IndexConfig:
    """Deterministic indexing settings."""

    module_extensions: tuple[str, ...] = DEFAULT_MODULE_EXTENSIONS
    ignore_files: tuple[str, ...] = DEFAULT_IGNORE_FILES
    max_link_depth: int = DEFAULT_MAX_LINK_DEPTH


@dataclass(slots=True, frozen=True)
class LoaderConfig:
    """Module resolution and cross-realm fetch settings."""

    base_realm_url: str = DEFAULT_BASE_REALM_URL
    import_map: dict[str, str] = field(default_factory=dict)
    known_realms: tuple[str, ...] = ()
    fetch_timeout_seconds: int = 10

    def effective_import_map(self) -> dict[str, str]:
        """Return the import map with the base realm package always present."""
        merged = {"base": self.base_realm_url}
        merged.update(self.import_map)
        return merged


@dataclass(slots=True, frozen=True)
class ResponseLimits:
    """Limits applied to server responses."""

    max_total_bytes_per_response: int = 1024 * 1024
    max_search_hits: int = 200


@dataclass(slots=True, frozen=True)
class RealmConfig:
    """Fully merged realm index configuration."""

    realm_root: Path
    realm_url: str
    data_dir: Path
    index: IndexConfig
    loader: LoaderConfig
    runner_mode: RunnerMode
    store_mode: StoreMode
    limits: ResponseLimits

    def to_public_dict(self) -> dict[str, object]:
        """Return serializable config snapshot for tool responses."""
        return {
            "realm_root": str(self.realm_root),
            "realm_url": self.realm_url,
            "data_dir": str(self.data_dir),
            "index": {
                "module_extensions": list(self.index.module_extensions),
                "ignore_files": list(self.index.ignore_files),
                "max_link_depth": self.index.max_link_depth,
            },
            "loader": {
                "base_realm_url": self.loader.base_realm_url,
                "import_map": dict(sorted(self.loader.effective_import_map().items())),
                "known_realms": list(self.loader.known_realms),
                "fetch_timeout_seconds": self.loader.fetch_timeout_seconds,
            },
            "runner": {"mode": self.runner_mode},
            "store": {"mode": self.store_mode},
            "limits": {
                "max_total_bytes_per_response": self.limits.max_total_bytes_per_response,
                "max_search_hits": self.limits.max_search_hits,
            },
        }


@dataclass(slots=True, frozen=True)
class CliOverrides:
    """Optional startup overrides applied at highest precedence."""

    realm_url: str | None = None
    data_dir: Path | None = None
    runner_mode: str | None = None
    store_mode: str | None = None
    max_search_hits: int | None = None


def default_config(realm_root: Path) -> RealmConfig:
    """Build default config for a given realm root."""
    resolved_root = realm_root.resolve()
    return RealmConfig(
        realm_root=resolved_root,
        realm_url=DEFAULT_REALM_URL,
        data_dir=resolved_root / ".realm_index",
        index=IndexConfig(),
        loader=LoaderConfig(),
        runner_mode="in-process",
        store_mode="memory",
        limits=ResponseLimits(),
    )


def load_realm_config_file(realm_root: Path) -> dict[str, object]:
    """Load optional realm_index.toml from the realm root."""
    config_path = realm_root / "realm_index.toml"
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        raise ValueError("realm_index.toml must contain a top-level table.")
    return payload


def _get_table(payload: dict[str, object], key: str) -> dict[str, object]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{key}' must be a table.")
    return value


def _tuple_of_strings(value: object, section: str, name: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ValueError(f"Config field '{section}.{name}' must be a list of strings.")
    output: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"Config field '{section}.{name}' must contain only strings.")
        output.append(item)
    return tuple(output)


def _optional_url(value: object, name: str, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or "://" not in value:
        raise ValueError(f"Config field '{name}' must be an absolute URL string.")
    return normalize_realm_url(value)


def _optional_choice(value: object, name: str, default: str, choices: tuple[str, ...]) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or value not in choices:
        raise ValueError(f"Config field '{name}' must be one of {', '.join(choices)}.")
    return value


def merge_config(
    base: RealmConfig, realm_payload: dict[str, object], overrides: CliOverrides
) -> RealmConfig:
    """Merge defaults, realm config, then CLI/startup overrides."""
    realm_table = _get_table(realm_payload, "realm")
    index_table = _get_table(realm_payload, "index")
    loader_table = _get_table(realm_payload, "loader")
    runner_table = _get_table(realm_payload, "runner")
    store_table = _get_table(realm_payload, "store")
    limits_table = _get_table(realm_payload, "limits")

    realm_url = _optional_url(realm_table.get("url"), "realm.url", base.realm_url)

    module_extensions = base.index.module_extensions
    if "module_extensions" in index_table:
        module_extensions = _tuple_of_strings(
            index_table["module_extensions"], "index", "module_extensions"
        )
        if any(not extension.startswith(".") for extension in module_extensions):
            raise ValueError("Config field 'index.module_extensions' entries must start with '.'.")
    ignore_files = base.index.ignore_files
    if "ignore_files" in index_table:
        ignore_files = _tuple_of_strings(index_table["ignore_files"], "index", "ignore_files")
    max_link_depth = _optional_positive_int_with_cap(
        index_table.get("max_link_depth"),
        "index.max_link_depth",
        base.index.max_link_depth,
        MAX_LINK_DEPTH_CAP,
    )

    base_realm_url = _optional_url(
        loader_table.get("base_realm_url"), "loader.base_realm_url", base.loader.base_realm_url
    )
    import_map = dict(base.loader.import_map)
    if "import_map" in loader_table:
        raw_import_map = loader_table["import_map"]
        if not isinstance(raw_import_map, dict):
            raise ValueError("Config field 'loader.import_map' must be a table.")
        for package, target in raw_import_map.items():
            import_map[package] = _optional_url(target, f"loader.import_map.{package}", "")
    known_realms = base.loader.known_realms
    if "known_realms" in loader_table:
        known_realms = tuple(
            _optional_url(item, "loader.known_realms", "")
            for item in _tuple_of_strings(loader_table["known_realms"], "loader", "known_realms")
        )
    fetch_timeout_seconds = _optional_positive_int_with_cap(
        loader_table.get("fetch_timeout_seconds"),
        "loader.fetch_timeout_seconds",
        base.loader.fetch_timeout_seconds,
        MAX_FETCH_TIMEOUT_SECONDS,
    )

    runner_mode = _optional_choice(
        runner_table.get("mode"), "runner.mode", base.runner_mode, _RUNNER_MODES
    )
    store_mode = _optional_choice(
        store_table.get("mode"), "store.mode", base.store_mode, _STORE_MODES
    )

    max_total_bytes_per_response = _optional_positive_int_with_cap(
        limits_table.get("max_total_bytes_per_response"),
        "limits.max_total_bytes_per_response",
        base.limits.max_total_bytes_per_response,
        MAX_TOTAL_BYTES_PER_RESPONSE_CAP,
    )
    max_search_hits = _optional_positive_int_with_cap(
        limits_table.get("max_search_hits"),
        "limits.max_search_hits",
        base.limits.max_search_hits,
        MAX_SEARCH_HITS_CAP,
    )

    merged = RealmConfig(
        realm_root=base.realm_root,
        realm_url=realm_url,
        data_dir=base.data_dir,
        index=IndexConfig(
            module_extensions=module_extensions,
            ignore_files=ignore_files,
            max_link_depth=max_link_depth,
        ),
        loader=LoaderConfig(
            base_realm_url=base_realm_url,
            import_map=import_map,
            known_realms=known_realms,
            fetch_timeout_seconds=fetch_timeout_seconds,
        ),
        runner_mode=runner_mode,  # type: ignore[arg-type]
        store_mode=store_mode,  # type: ignore[arg-type]
        limits=ResponseLimits(
            max_total_bytes_per_response=max_total_bytes_per_response,
            max_search_hits=max_search_hits,
        ),
    )
    return apply_cli_overrides(merged, overrides)


def apply_cli_overrides(config: RealmConfig, overrides: CliOverrides) -> RealmConfig:
    """Apply startup overrides at highest precedence."""
    realm_url = _optional_url(overrides.realm_url, "overrides.realm_url", config.realm_url)
    runner_mode = _optional_choice(
        overrides.runner_mode, "overrides.runner_mode", config.runner_mode, _RUNNER_MODES
    )
    store_mode = _optional_choice(
        overrides.store_mode, "overrides.store_mode", config.store_mode, _STORE_MODES
    )
    max_search_hits = _optional_positive_int_with_cap(
        overrides.max_search_hits,
        "overrides.max_search_hits",
        config.limits.max_search_hits,
        MAX_SEARCH_HITS_CAP,
    )
    data_dir = overrides.data_dir or config.data_dir
    return RealmConfig(
        realm_root=config.realm_root,
        realm_url=realm_url,
        data_dir=data_dir.resolve(),
        index=config.index,
        loader=config.loader,
        runner_mode=runner_mode,  # type: ignore[arg-type]
        store_mode=store_mode,  # type: ignore[arg-type]
        limits=ResponseLimits(
            max_total_bytes_per_response=config.limits.max_total_bytes_per_response,
            max_search_hits=max_search_hits,
        ),
    )


def load_effective_config(realm_root: Path, overrides: CliOverrides | None = None) -> RealmConfig:
    """Load effective config using merge order defaults -> realm config -> overrides."""
    resolved_root = realm_root.resolve()
    base = default_config(resolved_root)
    payload = load_realm_config_file(resolved_root)
    return merge_config(base, payload, overrides or CliOverrides())


def _optional_positive_int_with_cap(
    value: object,
    name: str,
    default: int,
    cap: int | None,
) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"Config field '{name}' must be a positive integer.")
    if cap is not None and value > cap:
        raise ValueError(f"Config field '{name}' must be <= {cap}.")
    return value
