"""
YAML Settings Provider: reads user defaults and project overrides from a file.

Format::

    users:
      alice:
        defaults: {new_cards_per_day: 30, timezone: Europe/Bucharest}
        projects:
          spanish: {new_cards_per_day: 10, learning_steps: [1, 10, 60]}

Values are passed through raw; validation and fallback happen in the resolver.
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml  # type: ignore

from mnemos.domain.errors import StoreUnavailableError
from mnemos.domain.ports import SettingsProvider

logger = logging.getLogger(__name__)


class YamlSettingsProvider(SettingsProvider):
    """
    Re-reads the file when its modification time changes, so edits apply to
    the next scheduling decision without a restart.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._cache: dict[str, Any] | None = None
        self._mtime: float | None = None

    async def get_project_overrides(
        self, user_id: str, project_id: str
    ) -> Mapping[str, Any] | None:
        projects = self._user_entry(user_id).get("projects")
        if not isinstance(projects, dict):
            return None
        return self._as_mapping(
            projects.get(project_id), f"users.{user_id}.projects.{project_id}"
        )

    async def get_user_defaults(self, user_id: str) -> Mapping[str, Any] | None:
        return self._as_mapping(
            self._user_entry(user_id).get("defaults"), f"users.{user_id}.defaults"
        )

    def _user_entry(self, user_id: str) -> dict[str, Any]:
        users = self._load().get("users") or {}
        entry = users.get(user_id)
        return entry if isinstance(entry, dict) else {}

    @staticmethod
    def _as_mapping(value: Any, where: str) -> Mapping[str, Any] | None:
        if value is None:
            return None
        if not isinstance(value, dict):
            logger.warning(f"Ignoring {where} in settings file: expected a mapping")
            return None
        return value

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            logger.debug(f"Settings file {self.path} not found; using defaults")
            return {}

        try:
            mtime = self.path.stat().st_mtime
            if self._cache is not None and mtime == self._mtime:
                return self._cache
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise StoreUnavailableError(f"Cannot read settings file {self.path}: {e}") from e

        if not isinstance(data, dict):
            logger.warning(f"Settings file {self.path} is not a mapping; ignoring it")
            data = {}

        self._cache = data
        self._mtime = mtime
        return data
