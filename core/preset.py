"""
PRESET RECORDS
Externally supplied step definitions: numbers, names, quotas, action
vocabularies and parent links. Read-only from the engine's point of view.
"""
import logging
import os
import yaml
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from core.ontology import PresetError, UnknownPresetError

logger = logging.getLogger("Presets")


class PresetStep(BaseModel):
    """One step of a preset, as stored by the configuration collaborator."""
    number: int = Field(description="Step number, unique within the preset (0 is reserved for Idle)")
    name: str
    real_quota: float = Field(gt=0, description="Nominal duration of the step in seconds")
    actions: List[str] = Field(default_factory=list)
    parents: List[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def default_actions(self) -> "PresetStep":
        # A step with no explicit vocabulary accepts its own name
        if not self.actions:
            self.actions = [self.name]
        return self


class Preset(BaseModel):
    """A named procedure: the step records that make up one process graph."""
    name: str
    steps: List[PresetStep] = Field(default_factory=list)

    def step(self, number: int) -> Optional[PresetStep]:
        for s in self.steps:
            if s.number == number:
                return s
        return None


def load_preset(path: Union[str, Path]) -> Preset:
    """
    Load a preset from a YAML (or JSON) file.

    Raises:
        PresetError if the file cannot be parsed into a Preset
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise PresetError(f"Cannot read preset {path}: {e}") from e

    if not isinstance(data, dict):
        raise PresetError(f"Preset {path} must be a mapping")

    try:
        return Preset.model_validate(data)
    except ValidationError as e:
        raise PresetError(f"Invalid preset {path}: {e}") from e


class PresetCatalog:
    """
    In-memory registry of presets by name.

    Stands in for the persistence collaborator; populated from a directory
    of YAML files or directly by the caller.
    """

    def __init__(self, presets: Optional[List[Preset]] = None):
        self._presets: Dict[str, Preset] = {}
        for preset in presets or []:
            self.add(preset)

    @classmethod
    def from_directory(cls, directory: Union[str, Path]) -> "PresetCatalog":
        catalog = cls()
        if not os.path.isdir(directory):
            logger.warning(f"Preset directory not found: {directory}")
            return catalog
        for entry in sorted(Path(directory).iterdir()):
            if entry.suffix.lower() in (".yaml", ".yml", ".json"):
                catalog.add(load_preset(entry))
        logger.info(f"Loaded {len(catalog)} presets from {directory}")
        return catalog

    def add(self, preset: Preset) -> None:
        if preset.name in self._presets:
            logger.warning(f"Preset {preset.name} already exists, replacing")
        self._presets[preset.name] = preset

    def get(self, name: str) -> Preset:
        if name not in self._presets:
            raise UnknownPresetError(name)
        return self._presets[name]

    def __contains__(self, name: str) -> bool:
        return name in self._presets

    def __len__(self) -> int:
        return len(self._presets)
