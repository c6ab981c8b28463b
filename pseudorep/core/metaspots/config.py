"""Configuration classes for spatial metaspot aggregation.

Column roles (group-by fields, coordinate columns) are explicit so the same
engine runs on any spatial platform's spot metadata.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..errors import ConfigurationError

METHODS = ("knn", "kmeans")
MODES = ("sum", "mean")
SPACES = ("grid", "pixel")


@dataclass
class CoordinateConfig:
    """Spatial coordinate columns in unit metadata.

    Attributes
    ----------
    row_col : str
        Array row index (grid space)
    col_col : str
        Array column index (grid space)
    x_col : str
        Horizontal image coordinate (pixel space)
    y_col : str
        Vertical image coordinate (pixel space)
    space : str
        Coordinate space used for neighborhoods: "grid" or "pixel"
    """

    row_col: str = "row"
    col_col: str = "col"
    x_col: str = "imagecol"
    y_col: str = "imagerow"
    space: str = "grid"

    def columns(self) -> Tuple[str, str]:
        """Coordinate columns for the active space, in canonical sort order."""
        if self.space == "pixel":
            return (self.y_col, self.x_col)
        return (self.row_col, self.col_col)

    def all_columns(self) -> List[str]:
        return [self.row_col, self.col_col, self.y_col, self.x_col]


@dataclass
class MetaspotConfig:
    """Configuration for metaspot construction.

    Attributes
    ----------
    group_by : List[str]
        Metadata columns; spots aggregate together only when all match.
        Empty means one group named "all"
    groups : List[str], optional
        Group keys to build; None builds every group
    coordinates : CoordinateConfig
        Coordinate column roles
    neighborhood_size : int
        Spots merged per metaspot
    n_metaspots : int, optional
        Fixed number of metaspots per group; overrides neighborhood_size
    method : str
        "knn" (greedy, deterministic) or "kmeans"
    min_units : int
        Groups smaller than neighborhood_size need at least this many spots
    mode : str
        "sum" or "mean" of member values
    retain_centroids : bool
        Store mean coordinates of each metaspot in obs
    key_delimiter : str
        Joins group values into a group key
    seed : int
        Random state for kmeans
    n_jobs : int
        Parallel jobs over groups
    """

    group_by: List[str] = field(default_factory=list)
    groups: Optional[List[str]] = None
    coordinates: CoordinateConfig = field(default_factory=CoordinateConfig)
    neighborhood_size: int = 7
    n_metaspots: Optional[int] = None
    method: str = "knn"
    min_units: int = 1
    mode: str = "sum"
    retain_centroids: bool = True
    key_delimiter: str = ":"
    seed: int = 42
    n_jobs: int = 1

    def __post_init__(self):
        if isinstance(self.group_by, str):
            self.group_by = [self.group_by]
        if isinstance(self.groups, str):
            self.groups = [self.groups]
        if isinstance(self.coordinates, dict):
            self.coordinates = CoordinateConfig(**self.coordinates)

    def validate(self) -> None:
        """Raise ConfigurationError on out-of-range values."""
        if self.method not in METHODS:
            raise ConfigurationError(f"Unknown metaspot method '{self.method}'", expected=list(METHODS), found=self.method)
        if self.mode not in MODES:
            raise ConfigurationError(f"Unknown aggregation mode '{self.mode}'", expected=list(MODES), found=self.mode)
        if self.coordinates.space not in SPACES:
            raise ConfigurationError(
                f"Unknown coordinate space '{self.coordinates.space}'",
                expected=list(SPACES),
                found=self.coordinates.space,
            )
        if self.neighborhood_size < 1:
            raise ConfigurationError("neighborhood_size must be >= 1", found=self.neighborhood_size)
        if self.n_metaspots is not None and self.n_metaspots < 1:
            raise ConfigurationError("n_metaspots must be >= 1", found=self.n_metaspots)
        if self.min_units < 1:
            raise ConfigurationError("min_units must be >= 1", found=self.min_units)
        if not self.key_delimiter:
            raise ConfigurationError("key_delimiter must be a non-empty string")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetaspotConfig":
        """Create from a dictionary (nested "coordinates" allowed)."""
        data = dict(data or {})
        coords = data.pop("coordinates", {}) or {}
        return cls(coordinates=CoordinateConfig(**coords), **data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "MetaspotConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested metaspots section
        if "metaspots" in data:
            data = data["metaspots"]

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "MetaspotConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
