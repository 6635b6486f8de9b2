"""Version detection and binary resolution for pgupgrader."""

import os
import re
from typing import Optional

from packaging import version

from pgupgrader.constants import (
    DEFAULT_BIN_DIR_TEMPLATE,
    MAX_SUPPORTED_VERSION,
    MIN_SUPPORTED_VERSION,
    VERSION_FILE,
)
from pgupgrader.errors import PreconditionError, UpgraderError, VersionNotFoundError
from pgupgrader.errors_catalog import actionable_error


class VersionService:
    """Reads PG_VERSION markers and maps major versions to binary directories."""

    BINARY_VERSION_PATTERN = re.compile(r"PostgreSQL\)?\s+(\d+(?:\.\d+){0,2})")

    def __init__(
        self,
        bin_dir_template: str = DEFAULT_BIN_DIR_TEMPLATE,
        min_version: int = MIN_SUPPORTED_VERSION,
        max_version: int = MAX_SUPPORTED_VERSION,
        runner=None,
    ):
        self.bin_dir_template = bin_dir_template
        self.min_version = min_version
        self.max_version = max_version
        self.runner = runner

    def detect_version(self, data_dir: str) -> int:
        if not data_dir:
            raise VersionNotFoundError("Data directory not specified.")

        version_file = os.path.join(data_dir, VERSION_FILE)
        try:
            with open(version_file, "r", encoding="utf-8") as file_obj:
                content = file_obj.read().strip()
        except OSError as exc:
            raise VersionNotFoundError(f"Failed to read {version_file}: {exc}") from exc

        if not content.isdigit():
            raise VersionNotFoundError(f"Invalid version format in {version_file}: {content!r}")
        return int(content)

    def resolve_bin_dir(self, major_version: int) -> str:
        return self.bin_dir_template.format(version=major_version)

    def is_supported(self, major_version: int) -> bool:
        return self.min_version <= major_version <= self.max_version

    def ensure_supported(self, current_version: int, target_version: int):
        if self.is_supported(current_version) and self.is_supported(target_version):
            return
        raise PreconditionError(
            actionable_error(
                "version_out_of_range",
                current=str(current_version),
                target=str(target_version),
                supported=f"{self.min_version}-{self.max_version}",
            )
        )

    def parse_binary_version(self, output: str) -> Optional[version.Version]:
        match = self.BINARY_VERSION_PATTERN.search(output or "")
        if not match:
            return None
        try:
            return version.parse(match.group(1))
        except version.InvalidVersion:
            return None

    def binary_version(self, bin_dir: str) -> version.Version:
        """Returns the full version reported by ``postgres --version``."""
        if self.runner is None:
            raise UpgraderError("A command runner is required to query binary versions.")

        result = self.runner.run([os.path.join(bin_dir, "postgres"), "--version"])
        parsed = self.parse_binary_version(result.stdout)
        if parsed is None:
            raise UpgraderError(
                f"Could not parse PostgreSQL version from output: {result.stdout.strip()!r}"
            )
        return parsed
