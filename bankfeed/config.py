"""YAML configuration loader for bankfeed.

Loads the two config files from the config/ directory:
  categories.yaml  the property-investment category taxonomy
  settings.yaml    aggregator, sync, categorization, anomaly and alert tuning

Missing settings fall back to the defaults below, so a settings.yaml
only needs the keys it overrides.
"""

from __future__ import annotations

import copy
from pathlib import Path

import yaml

DEFAULT_SETTINGS: dict[str, dict] = {
    "aggregator": {
        "base_url": "https://au-api.basiq.io",
        "api_version": "3.0",
        "timeout_seconds": 30.0,
    },
    "sync": {
        "manual_sync_cooldown_minutes": 15,
        "recent_window": 100,
        "categorize_batch_size": 50,
    },
    "categorization": {
        "confidence_threshold": 80,
        "max_examples": 10,
        "max_workers": 5,
        "call_timeout_seconds": 30.0,
        "monthly_budget_cents": 500,
        "model": "claude-3-haiku-20240307",
    },
    "anomaly": {
        "history_months": 6,
        "unusual_amount_threshold": 0.30,
        "unexpected_expense_min": 500.0,
        "min_historical_count": 3,
    },
    "alerts": {
        "email_delay_hours": 24,
    },
}


def settings_section(config: Config | None, name: str) -> dict:
    """Return one settings section, or its defaults when no config is given."""
    if config is None:
        return dict(DEFAULT_SETTINGS[name])
    return config.settings[name]


class Config:
    """Loads and provides access to the YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._categories: list[dict] | None = None
        self._settings: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def categories(self) -> list[dict]:
        if self._categories is None:
            data = self._load("categories.yaml")
            self._categories = data.get("categories", []) if isinstance(data, dict) else data
        return self._categories

    @property
    def settings(self) -> dict:
        """settings.yaml merged over DEFAULT_SETTINGS, one level deep."""
        if self._settings is None:
            data = self._load("settings.yaml")
            if not isinstance(data, dict):
                raise ValueError(
                    f"settings.yaml must be a mapping, got {type(data).__name__}"
                )
            merged = copy.deepcopy(DEFAULT_SETTINGS)
            for section, values in data.items():
                if isinstance(values, dict):
                    merged.setdefault(section, {}).update(values)
                else:
                    merged[section] = values
            self._settings = merged
        return self._settings

    def setting(self, section: str, key: str):
        """Look up one setting, e.g. ``config.setting("sync", "recent_window")``."""
        return self.settings.get(section, {}).get(key)

    @property
    def aggregator(self) -> dict:
        return self.settings["aggregator"]

    @property
    def sync(self) -> dict:
        return self.settings["sync"]

    @property
    def categorization(self) -> dict:
        return self.settings["categorization"]

    @property
    def anomaly(self) -> dict:
        return self.settings["anomaly"]

    @property
    def alerts(self) -> dict:
        return self.settings["alerts"]
