"""Configuration: schema, defaults, profiles and the layered loader.

Builders that turn a validated mapping into runtime objects live in
``nexus_verifier.config.factories`` so importing this package stays cheap.
"""

from nexus_verifier.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLayer,
    ConfigLoadError,
    LoadedConfig,
    dump_effective_config,
    effective_config,
    env_name_for_path,
    load_config,
    resolve_config,
)
from nexus_verifier.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    VerifierConfig,
    apply_profile_overlay,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLayer",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "LoadedConfig",
    "VerifierConfig",
    "apply_profile_overlay",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "env_name_for_path",
    "load_config",
    "merge_config",
    "resolve_config",
    "validate_config",
]
