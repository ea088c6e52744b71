from __future__ import annotations
import logging
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from gitlabsql.config.models import ConnectionConfig, GitLabSettings, resolve_settings
from gitlabsql.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION = "gitlab"


class ConnectionRegistry:
    """
    GitLab connections by name, each resolved once into GitLabSettings.

    Backend: directory of YAML files, one ConnectionConfig per file, named by
    its `name` key or else the file stem. Every config is merged with
    GITLAB_ADDR / GITLAB_TOKEN through resolve_settings(). When the directory
    is missing or holds no files, a single environment-only 'gitlab'
    connection is resolved instead.

    A connection that fails to resolve is kept with its error, so queries
    against it report why. load() swaps settings and errors together under
    the lock; a failed load leaves the previous state in place.
    """

    def __init__(
        self,
        config_dir: str = "configs/connections",
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._config_dir = Path(config_dir)
        self._environ = environ
        self._settings: Dict[str, GitLabSettings] = {}
        self._errors: Dict[str, str] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> None:
        """
        Read connection files and resolve every connection.

        Raises:
            ConfigurationError: a connection file is not valid YAML or does
                not match ConnectionConfig.
        """
        configs = self._read_configs() or [ConnectionConfig(name=DEFAULT_CONNECTION)]

        settings: Dict[str, GitLabSettings] = {}
        errors: Dict[str, str] = {}
        for cfg in configs:
            try:
                settings[cfg.name] = resolve_settings(cfg, self._environ)
            except ConfigurationError as exc:
                logger.error("Connection %s is not usable: %s", cfg.name, exc)
                errors[cfg.name] = str(exc)
                continue
            logger.info(
                "Connection %s → %s (gitlab.com: %s)",
                cfg.name, settings[cfg.name].base_url, settings[cfg.name].is_gitlab_cloud,
            )

        with self._lock:
            self._settings, self._errors = settings, errors

    def _read_configs(self) -> List[ConnectionConfig]:
        if not self._config_dir.is_dir():
            logger.warning(
                "Connection config dir not found: %s; using environment only", self._config_dir
            )
            return []

        paths = sorted(
            list(self._config_dir.glob("*.yaml")) + list(self._config_dir.glob("*.yml"))
        )
        configs: List[ConnectionConfig] = []
        for yaml_path in paths:
            try:
                raw = yaml.safe_load(yaml_path.read_text()) or {}
                raw.setdefault("name", yaml_path.stem)
                configs.append(ConnectionConfig.model_validate(raw))
            except (ValidationError, yaml.YAMLError) as exc:
                logger.error("Failed to load connection config %s: %s", yaml_path, exc)
                raise ConfigurationError(
                    f"Invalid connection config {yaml_path.name}: {exc}"
                ) from exc
        return configs

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def settings_for(self, name: str) -> GitLabSettings:
        """
        Raises:
            KeyError: no connection called name.
            ConfigurationError: the connection exists but did not resolve.
        """
        with self._lock:
            if name in self._errors:
                raise ConfigurationError(self._errors[name])
            try:
                return self._settings[name]
            except KeyError:
                raise KeyError(f"Unknown connection: '{name}'") from None

    def health(self) -> Dict[str, str]:
        """Connection name → 'ok' or 'error: <reason>'."""
        with self._lock:
            checks = {name: "ok" for name in self._settings}
            checks.update({name: f"error: {err}" for name, err in self._errors.items()})
        return checks

    @property
    def healthy(self) -> bool:
        with self._lock:
            return bool(self._settings) and not self._errors
