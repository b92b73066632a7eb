"""
Longshot - Config Manager
Persisted capture configuration record (pre-capture settings).
"""

import json
import logging
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from capture_models import CaptureConfig

logger = logging.getLogger(__name__)


class ConfigManager:
    """Loads and saves the CaptureConfig record; fields are only ever added"""

    FILE_NAME = "capture_config.json"

    def __init__(self, data_dir: str = "data"):
        self.storage_dir = Path(data_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.storage_dir / self.FILE_NAME
        self._config = self._load()

    def _load(self) -> CaptureConfig:
        if not self.config_file.exists():
            return CaptureConfig()
        try:
            with open(self.config_file, "r") as f:
                return CaptureConfig.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"[ConfigManager] Failed to load {self.config_file}, using defaults: {e}")
            return CaptureConfig()

    def _save(self):
        with open(self.config_file, "w") as f:
            json.dump(self._config.model_dump(mode="json", by_alias=True), f, indent=2)

    def get(self) -> CaptureConfig:
        return self._config.model_copy()

    def update(self, changes: Union[CaptureConfig, dict]) -> CaptureConfig:
        """Merge changes into the stored record and persist it"""
        if isinstance(changes, CaptureConfig):
            changes = changes.model_dump(exclude_unset=True)
        merged = {**self._config.model_dump(), **changes}
        self._config = CaptureConfig.model_validate(merged)
        self._save()
        logger.info(f"[ConfigManager] Config updated: {self._config.model_dump()}")
        return self.get()
