"""Configuration loader for pgupgrader."""

from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from pgupgrader.errors import UpgraderError
from pgupgrader.models import UpgraderConfig

DEFAULT_CONFIG_FILE = ".pgupgrader.yml"


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {item.name for item in fields(UpgraderConfig)} | {"verbose", "log_file"}

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise UpgraderError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise UpgraderError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise UpgraderError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(str(key) for key in set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise UpgraderError(f"Unknown configuration keys: {unknown_list}")

        return parsed

    def build_config(self, values: Dict[str, Any], **overrides) -> UpgraderConfig:
        """Merges file values and non-None overrides into an UpgraderConfig."""
        merged = {
            key: value
            for key, value in values.items()
            if key in UpgraderConfig.__dataclass_fields__
        }
        merged.update({key: value for key, value in overrides.items() if value is not None})

        config = UpgraderConfig(**merged)
        try:
            for name in ("min_version", "max_version", "port", "temp_port"):
                setattr(config, name, int(getattr(config, name)))
            for name in ("command_timeout", "upgrade_timeout", "wait_timeout", "poll_interval"):
                setattr(config, name, float(getattr(config, name)))
        except (TypeError, ValueError) as exc:
            raise UpgraderError(f"Invalid configuration value: {exc}") from exc

        if "{version}" not in config.bin_dir_template:
            raise UpgraderError("bin_dir_template must contain a '{version}' placeholder.")
        if config.min_version > config.max_version:
            raise UpgraderError("min_version must not be greater than max_version.")
        return config
