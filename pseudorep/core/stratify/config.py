"""Configuration for splitting an aggregate matrix by a label."""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..errors import ConfigurationError


@dataclass
class StratifyConfig:
    """Configuration for the multi-group splitter.

    Attributes
    ----------
    field : str
        Stratification field (metadata column or row-id token name)
    levels : List[str], optional
        Declared labels, in output order; labels outside them are errors
    delimiter : str
        Row-id token delimiter when the field is parsed from ids
    """

    field: str = ""
    levels: Optional[List[str]] = None
    delimiter: str = ":"

    def validate(self) -> None:
        if not self.field:
            raise ConfigurationError("Stratification field is required")
        if self.levels is not None and len(set(map(str, self.levels))) != len(self.levels):
            raise ConfigurationError("Declared levels must be unique", found=self.levels)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StratifyConfig":
        return cls(**(data or {}))

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "StratifyConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if "stratify" in data:
            data = data["stratify"]
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
