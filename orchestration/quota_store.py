"""
QUOTA STORE
Holds the QuotaConfig of each preset and the per-preset disabled-mode cache.

The cache is an explicit registry owned by whoever builds the store, not a
module global. Replacing a preset's config notifies subscribers, which is
how the ModeRegistry drops its stale entry.
"""
import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from core.preset import PresetCatalog
from core.quota import QuotaConfig

logger = logging.getLogger("QuotaStore")


class QuotaConfigStore:
    """
    preset name -> QuotaConfig.

    Presets with no stored config get the offset-mode default built from
    their own step quotas.
    """

    def __init__(self, catalog: Optional[PresetCatalog] = None):
        self.catalog = catalog
        self._configs: Dict[str, QuotaConfig] = {}
        self._listeners: List[Callable[[str], None]] = []

    @classmethod
    def from_directory(
        cls,
        directory: Union[str, Path],
        catalog: Optional[PresetCatalog] = None
    ) -> "QuotaConfigStore":
        """Load every YAML file in `directory`; the file stem names the preset."""
        store = cls(catalog)
        if not os.path.isdir(directory):
            logger.warning(f"Quota directory not found: {directory}")
            return store
        for entry in sorted(Path(directory).iterdir()):
            if entry.suffix.lower() in (".yaml", ".yml", ".json"):
                store.put(entry.stem, QuotaConfig.load(entry))
        return store

    def subscribe(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the preset name whenever its config changes."""
        self._listeners.append(listener)

    def put(self, preset_name: str, config: QuotaConfig) -> None:
        self._configs[preset_name] = config
        logger.info(f"Quota config for {preset_name} set (mode={config.mode.value})")
        for listener in self._listeners:
            listener(preset_name)

    def get(self, preset_name: str) -> QuotaConfig:
        if preset_name in self._configs:
            return self._configs[preset_name]
        if self.catalog is not None and preset_name in self.catalog:
            return QuotaConfig.default_for(self.catalog.get(preset_name))
        logger.debug(f"No quota config for {preset_name}, every step uses its default")
        return QuotaConfig()


class ModeRegistry:
    """
    Cached answer to "is quota tracking disabled for this preset?".

    Subscribes to the store so a changed config invalidates its entry.
    """

    def __init__(self, store: QuotaConfigStore):
        self.store = store
        self._disabled: Dict[str, bool] = {}
        store.subscribe(self.invalidate)

    def is_disabled(self, preset_name: str) -> bool:
        if preset_name not in self._disabled:
            self._disabled[preset_name] = self.store.get(preset_name).is_disabled
        return self._disabled[preset_name]

    def invalidate(self, preset_name: Optional[str] = None) -> None:
        """Drop one cached entry, or all of them when no name is given."""
        if preset_name is None:
            self._disabled.clear()
        else:
            self._disabled.pop(preset_name, None)
        logger.debug(f"Mode cache invalidated for {preset_name or 'all presets'}")
