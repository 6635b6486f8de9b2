"""Rewrites locale settings the current environment cannot load.

pg_upgrade starts the old server against the current operating system. When
the cluster was initialised somewhere with a locale this host lacks, that start
fails outright. Replacing the missing locale with a fallback makes the old
server startable again, at the cost of changing message/number/time formatting
for sessions that relied on the original value. Collation is not touched here:
lc_collate/lc_ctype live in the catalog, not in the config files.
"""

import os
import re
import tempfile
from typing import Iterable, List, Optional, Set, Tuple

from pgupgrader.constants import AUTO_CONF_FILE, DEFAULT_FALLBACK_LOCALE, MAIN_CONF_FILE
from pgupgrader.errors import CommandError, UpgraderError


class LocaleNormalizer:
    """Makes locale settings in postgresql.conf/postgresql.auto.conf loadable."""

    LOCALE_PARAMS = ("lc_messages", "lc_monetary", "lc_numeric", "lc_time")
    ALWAYS_AVAILABLE = frozenset({"c", "posix", "c.utf8"})
    SETTING_PATTERN = re.compile(
        r"^(?P<prefix>\s*(?P<name>[A-Za-z_]+)\s*=?\s*)"
        r"(?P<value>'[^']*'|\"[^\"]*\"|[^\s#]+)"
        r"(?P<suffix>.*)$"
    )

    def __init__(self, runner, logger, fallback_locale: str = DEFAULT_FALLBACK_LOCALE):
        self.runner = runner
        self.logger = logger
        self.fallback_locale = fallback_locale

    @staticmethod
    def normalize_locale_name(name: str) -> str:
        """Canonical form for comparing ``en_US.UTF-8`` with ``en_US.utf8``."""
        name = name.strip().lower()
        if "." not in name:
            return name
        base, _, codeset = name.partition(".")
        modifier = ""
        if "@" in codeset:
            codeset, _, modifier = codeset.partition("@")
            modifier = f"@{modifier}"
        return f"{base}.{codeset.replace('-', '')}{modifier}"

    def available_locales(self) -> Set[str]:
        try:
            result = self.runner.run(["locale", "-a"])
        except CommandError as exc:
            self.logger.warning(
                "Could not list installed locales, only C/POSIX will be trusted: %s", exc
            )
            return set(self.ALWAYS_AVAILABLE)

        locales = {self.normalize_locale_name(line) for line in result.stdout.splitlines() if line.strip()}
        return locales | set(self.ALWAYS_AVAILABLE)

    def rewrite_lines(
        self, lines: Iterable[str], available: Set[str]
    ) -> Tuple[List[str], List[Tuple[str, str]]]:
        """Returns the rewritten lines and the (parameter, old value) pairs replaced."""
        output: List[str] = []
        replaced: List[Tuple[str, str]] = []

        for line in lines:
            match = self.SETTING_PATTERN.match(line)
            if not match or match.group("name").lower() not in self.LOCALE_PARAMS:
                output.append(line)
                continue

            value = match.group("value").strip("'\"")
            if not value or self.normalize_locale_name(value) in available:
                output.append(line)
                continue

            output.append(
                f"{match.group('prefix')}'{self.fallback_locale}'{match.group('suffix')}"
            )
            replaced.append((match.group("name"), value))

        return output, replaced

    def _rewrite_file(self, path: str, available: Set[str]) -> List[Tuple[str, str]]:
        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                lines = file_obj.read().splitlines()
        except OSError as exc:
            raise UpgraderError(f"Could not read config file '{path}': {exc}") from exc

        new_lines, replaced = self.rewrite_lines(lines, available)
        if not replaced:
            return replaced

        mode: Optional[int] = None
        try:
            mode = os.stat(path).st_mode & 0o777
        except OSError:
            mode = None

        fd, temp_path = tempfile.mkstemp(prefix=".locale-", dir=os.path.dirname(path) or ".")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write("\n".join(new_lines))
                file_obj.write("\n")
            if mode is not None:
                os.chmod(temp_path, mode)
            os.replace(temp_path, path)
        except OSError as exc:
            raise UpgraderError(f"Could not write config file '{path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

        return replaced

    def fix_locale_settings(self, data_dir: str) -> List[Tuple[str, str]]:
        available = None
        replaced_all: List[Tuple[str, str]] = []

        for file_name in (MAIN_CONF_FILE, AUTO_CONF_FILE):
            path = os.path.join(data_dir, file_name)
            if not os.path.isfile(path):
                continue
            if available is None:
                available = self.available_locales()

            replaced = self._rewrite_file(path, available)
            for name, old_value in replaced:
                self.logger.warning(
                    "Locale %s=%s is not available here, rewrote it to %s in %s",
                    name,
                    old_value,
                    self.fallback_locale,
                    file_name,
                )
            replaced_all.extend(replaced)

        return replaced_all
