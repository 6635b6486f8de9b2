"""Actionable error catalog for pgupgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "data_dir_missing": {
        "what": "PostgreSQL data directory does not exist at {path}.",
        "next": "Run `pgupgrader init` first or point `--data-dir`/PGDATA at an initialized cluster.",
    },
    "version_out_of_range": {
        "what": "Invalid version range. Current: {current}, Target: {target}. Supported versions: {supported}.",
        "next": "Choose a target inside the supported range or install the missing PostgreSQL binaries.",
    },
    "cluster_running": {
        "what": "PostgreSQL is currently running on {path}.",
        "next": "Stop it with `pgupgrader stop` before retrying.",
    },
    "cluster_not_running": {
        "what": "PostgreSQL is not running on {path}.",
        "next": "Start it with `pgupgrader start` before retrying.",
    },
    "data_dir_locked": {
        "what": "Another pgupgrader process is already working on {path}.",
        "next": "Wait for it to finish; only one upgrade may target a data directory at a time.",
    },
    "upgrade_step_failed": {
        "what": "Upgrade from {from_version} to {to_version} failed.",
        "next": "Inspect {work_dir}, restore from {backup} if needed, then retry.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
