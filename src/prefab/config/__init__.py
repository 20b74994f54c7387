"""Config package public API: load ``prefab.toml`` plus ``PREFAB_`` env overrides."""

from prefab.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    materialize_cli_overrides,
    normalize_paths,
    parse_override_pairs,
)
from prefab.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    PrefabConfig,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "PrefabConfig",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "materialize_cli_overrides",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "parse_override_pairs",
    "validate_config",
]
