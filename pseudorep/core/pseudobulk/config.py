"""Configuration for pseudobulk aggregation."""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..errors import ConfigurationError


@dataclass
class PseudobulkConfig:
    """Configuration for pseudobulk construction.

    Attributes
    ----------
    group_col : str
        Cell-type (or other grouping) column
    replicate_col : str
        Biological replicate column (sample, donor)
    label_col : str, optional
        Extra label column (sex, condition) added to the partition key
    min_replicates : int
        Fewer distinct replicates than this triggers a warning
    delimiter : str
        Joins key tokens into the row id
    groups : List[str], optional
        Group values to build; None builds every group
    genes : List[str], optional
        Genes to keep (from upstream gene selection)
    units : List[str], optional
        Units to keep (from upstream cell selection)
    """

    group_col: str = "cell_type"
    replicate_col: str = "sample"
    label_col: Optional[str] = None
    min_replicates: int = 5
    delimiter: str = ":"
    groups: Optional[List[str]] = None
    genes: Optional[List[str]] = None
    units: Optional[List[str]] = None

    def __post_init__(self):
        if isinstance(self.groups, str):
            self.groups = [self.groups]

    @property
    def key_fields(self) -> List[str]:
        """Names of the tokens in a row id, in order."""
        fields = [self.group_col, self.replicate_col]
        if self.label_col:
            fields.append(self.label_col)
        return fields

    def validate(self) -> None:
        if self.min_replicates < 0:
            raise ConfigurationError("min_replicates must be >= 0", found=self.min_replicates)
        if not self.delimiter:
            raise ConfigurationError("delimiter must be a non-empty string")
        if len(set(self.key_fields)) != len(self.key_fields):
            raise ConfigurationError(
                "Group, replicate and label columns must be distinct",
                found=self.key_fields,
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PseudobulkConfig":
        return cls(**(data or {}))

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PseudobulkConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if "pseudobulk" in data:
            data = data["pseudobulk"]

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "PseudobulkConfig":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
