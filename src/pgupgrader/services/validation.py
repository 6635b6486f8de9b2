"""Cluster and configuration validation for pgupgrader."""

import os
import re
import shutil
import tempfile
from typing import Optional

from pgupgrader.errors import (
    ClusterValidationError,
    CommandError,
    ConfigValidationError,
    VersionNotFoundError,
)
from pgupgrader.models import ControlData

KNOWN_CLUSTER_STATES = frozenset(
    {
        "starting up",
        "shut down",
        "shut down in recovery",
        "shutting down",
        "in crash recovery",
        "in archive recovery",
        "in production",
    }
)

_UNRECOGNIZED = re.compile(r'unrecognized configuration parameter "([^"]+)"')
_INVALID_VALUE = re.compile(r'invalid value for parameter "([^"]+)": "([^"]*)"')
_OUT_OF_RANGE = re.compile(
    r'(-?[0-9.]+) is outside the valid range for parameter "([^"]+)" \(([^)]+)\)'
)
_SYNTAX_ERROR = re.compile(r'syntax error in file "[^"]*" line (\d+)')
_FILE_LINE = re.compile(r'in file "[^"]*" line (\d+)')


def parse_diagnostics(output: str) -> ConfigValidationError:
    """Turns the server's diagnostic text into a ConfigValidationError.

    The first recognised diagnostic wins. Output that matches nothing becomes a
    generic error that still carries the full text.
    """
    line_number: Optional[int] = None
    for raw_line in (output or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue

        file_line = _FILE_LINE.search(line)
        if file_line and line_number is None:
            line_number = int(file_line.group(1))

        match = _UNRECOGNIZED.search(line)
        if match:
            return ConfigValidationError(
                "unrecognized configuration parameter",
                raw=line,
                parameter=match.group(1),
                line=line_number,
            )

        match = _INVALID_VALUE.search(line)
        if match:
            return ConfigValidationError(
                f"invalid value: {match.group(2)}",
                raw=line,
                parameter=match.group(1),
                line=line_number,
            )

        match = _OUT_OF_RANGE.search(line)
        if match:
            return ConfigValidationError(
                f"value {match.group(1)} is outside valid range ({match.group(3)})",
                raw=line,
                parameter=match.group(2),
                line=line_number,
            )

        match = _SYNTAX_ERROR.search(line)
        if match:
            return ConfigValidationError(
                "syntax error",
                raw=line,
                line=int(match.group(1)),
            )

    text = (output or "").strip()
    return ConfigValidationError(
        f"configuration validation failed: {text}",
        raw=output or "",
        line=line_number,
    )


class ClusterValidator:
    """Confirms a data directory is what an upgrade step expects it to be."""

    def __init__(self, version_service, probe, runner, logger):
        self.version_service = version_service
        self.probe = probe
        self.runner = runner
        self.logger = logger

    def validate(self, bin_dir: str, data_dir: str, expected_version: int) -> ControlData:
        try:
            found = self.version_service.detect_version(data_dir)
        except VersionNotFoundError as exc:
            raise ClusterValidationError(str(exc)) from exc

        if found != expected_version:
            raise ClusterValidationError(
                f"Expected PostgreSQL {expected_version} in {data_dir}, but found version {found}."
            )

        try:
            control_data = self.probe.get_control_data(bin_dir, data_dir)
        except CommandError as exc:
            raise ClusterValidationError(f"Failed to read control data for {data_dir}: {exc}") from exc

        if control_data.cluster_state not in KNOWN_CLUSTER_STATES:
            raise ClusterValidationError(
                f"Unexpected cluster state '{control_data.cluster_state}' reported for {data_dir}."
            )

        self.logger.debug(
            "Validated %s at version %s (state: %s)",
            data_dir,
            found,
            control_data.cluster_state,
        )
        return control_data

    def validate_config_text(self, bin_dir: str, config_text: str):
        """Asks the server binary to load ``config_text``; raises on any diagnostic."""
        temp_dir = tempfile.mkdtemp(prefix="pg_validate_")
        try:
            config_path = os.path.join(temp_dir, "postgresql.conf")
            data_dir = os.path.join(temp_dir, "data")
            os.makedirs(data_dir, mode=0o700)
            with open(config_path, "w", encoding="utf-8") as file_obj:
                file_obj.write(config_text)

            try:
                self.runner.run(
                    [
                        os.path.join(bin_dir, "postgres"),
                        f"--config-file={config_path}",
                        "-D",
                        data_dir,
                        "-C",
                        "data_directory",
                    ]
                )
            except CommandError as exc:
                raise parse_diagnostics(exc.output) from exc
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
