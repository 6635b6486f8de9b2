"""Upgrade manifest generation service."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pgupgrader.models import BackupRecord, UpgradeStep


class ManifestService:
    """Records one upgrade run (versions, backup, per-step outcome) as JSON.

    The file is rewritten after every change, so a run that dies half way
    still leaves a manifest describing how far it got.
    """

    def __init__(self, manifest_file: str, logger):
        self.manifest_file = manifest_file
        self.logger = logger
        self.manifest: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "data_dir": None,
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "versions": {"source": None, "target": None, "current": None},
            "backup": None,
            "steps": [],
            "error": None,
        }

    def start_run(self, run_id: str, data_dir: str, source: int, target: int):
        self.manifest["run_id"] = run_id
        self.manifest["status"] = "running"
        self.manifest["data_dir"] = data_dir
        self.manifest["started_at"] = self._now()
        self.manifest["versions"] = {"source": source, "target": target, "current": source}
        self.write()

    def set_current_version(self, current: int):
        self.manifest["versions"]["current"] = current
        self.write()

    def record_backup(self, record: BackupRecord):
        self.manifest["backup"] = {
            "source_version": record.source_version,
            "path": record.path,
            "created_at": record.created_at.isoformat(),
        }
        self.write()

    def step_started(self, step_name: str, details: Optional[Dict[str, Any]] = None):
        self.manifest["steps"].append(
            {
                "name": step_name,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "details": details or {},
                "error": None,
            }
        )
        self.write()

    def step_finished(
        self,
        step_name: str,
        status: str,
        step: Optional[UpgradeStep] = None,
        error: Optional[str] = None,
    ):
        for entry in reversed(self.manifest["steps"]):
            if entry["name"] != step_name or entry["status"] != "running":
                continue
            entry["status"] = status
            entry["finished_at"] = self._now()
            entry["duration_seconds"] = self._elapsed(entry["started_at"], entry["finished_at"])
            entry["error"] = error
            if step is not None:
                entry["details"].update(
                    {
                        "from_version": step.from_version,
                        "to_version": step.to_version,
                        "old_bin_dir": step.old_bin_dir,
                        "new_bin_dir": step.new_bin_dir,
                    }
                )
            break
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        self.manifest["status"] = status
        self.manifest["finished_at"] = self._now()
        if self.manifest.get("started_at"):
            self.manifest["duration_seconds"] = self._elapsed(
                self.manifest["started_at"], self.manifest["finished_at"]
            )
        self.manifest["error"] = error
        self.write()

    def write(self):
        manifest_dir = os.path.dirname(self.manifest_file) or "."
        try:
            os.makedirs(manifest_dir, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                prefix=".upgrade-manifest-", suffix=".json", dir=manifest_dir
            )
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)
            return

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.manifest, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.manifest_file)
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _elapsed(started_at: str, finished_at: str) -> float:
        return (datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)).total_seconds()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
