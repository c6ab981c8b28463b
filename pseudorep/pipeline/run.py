"""Run representation and validation for aggregation plans."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from ..core.metaspots import MetaspotConfig
from ..core.normalization import GENE_SELECTION_METHODS, TRANSFORMS
from ..core.pseudobulk import PseudobulkConfig
from ..core.stratify import StratifyConfig

RUN_KINDS = ("metaspots", "pseudobulk", "split")
AGGREGATION_KINDS = ("metaspots", "pseudobulk")

RunConfig = Union[MetaspotConfig, PseudobulkConfig, StratifyConfig]


@dataclass
class RunSpec:
    """A single named run in an aggregation plan.

    Attributes
    ----------
    name : str
        Run name; results are stored under it
    kind : str
        "metaspots", "pseudobulk" or "split"
    config : Dict[str, Any]
        Engine configuration (fields of the kind's config dataclass)
    source : str, optional
        Run whose result a split run divides
    normalize : str, optional
        Normalization applied to the aggregate matrix (key in TRANSFORMS)
    genes : Dict[str, Any], optional
        Gene selection applied to the aggregate matrix
        (``method``, ``fraction``, ``group_by``, ``genes``)
    depends_on : List[str]
        Extra runs that must finish first
    export : bool
        Write CSV/JSON outputs for this run

    Example
    -------
    >>> run = RunSpec(name="astro_by_sex", kind="split", source="astro_pb",
    ...               config={"field": "msex"})
    >>> valid, errors = run.validate()
    """

    name: str
    kind: str
    config: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    normalize: Optional[str] = None
    genes: Optional[Dict[str, Any]] = None
    depends_on: List[str] = field(default_factory=list)
    export: bool = True

    @property
    def dependencies(self) -> List[str]:
        """Source run (if any) plus explicit dependencies, without repeats."""
        deps = [self.source] if self.source else []
        return list(dict.fromkeys(deps + list(self.depends_on)))

    def validate(self) -> Tuple[bool, List[str]]:
        """Check kind, source and option values.

        Returns
        -------
        Tuple[bool, List[str]]
            (success, errors)
        """
        errors = []

        if self.kind not in RUN_KINDS:
            errors.append(f"Run '{self.name}' has unknown kind '{self.kind}' (expected one of {list(RUN_KINDS)})")
            return (False, errors)

        if self.kind == "split" and not self.source:
            errors.append(f"Split run '{self.name}' requires a 'source' run")
        if self.kind != "split" and self.source:
            errors.append(f"Run '{self.name}' of kind '{self.kind}' cannot take a 'source'")

        if self.normalize is not None:
            if self.kind == "split":
                errors.append(f"Split run '{self.name}' cannot be normalized; normalize its source")
            elif self.normalize not in TRANSFORMS:
                errors.append(f"Run '{self.name}' has unknown normalization '{self.normalize}'")

        if self.genes is not None:
            method = self.genes.get("method", "fraction")
            if self.kind == "split":
                errors.append(f"Split run '{self.name}' cannot select genes; select on its source")
            elif method not in GENE_SELECTION_METHODS:
                errors.append(f"Run '{self.name}' has unknown gene selection '{method}'")

        try:
            self.build_config().validate()
        except (TypeError, ValueError) as e:
            errors.append(f"Run '{self.name}' has invalid config: {e}")

        return (len(errors) == 0, errors)

    def build_config(self) -> RunConfig:
        """Typed configuration for this run's engine."""
        if self.kind == "metaspots":
            return MetaspotConfig.from_dict(self.config)
        if self.kind == "pseudobulk":
            return PseudobulkConfig.from_dict(self.config)
        return StratifyConfig.from_dict(self.config)

    def to_dict(self) -> Dict[str, Any]:
        """Convert run to dictionary for serialization."""
        return {
            "kind": self.kind,
            "config": self.config,
            "source": self.source,
            "normalize": self.normalize,
            "genes": self.genes,
            "depends_on": self.depends_on,
            "export": self.export,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], name: str) -> "RunSpec":
        """Create RunSpec from a plan entry.

        Raises
        ------
        KeyError
            If the entry has no 'kind'
        """
        if "kind" not in data:
            raise KeyError(f"Run '{name}' missing required field 'kind'")
        return cls(
            name=name,
            kind=data["kind"],
            config=dict(data.get("config") or {}),
            source=data.get("source"),
            normalize=data.get("normalize"),
            genes=data.get("genes"),
            depends_on=list(data.get("depends_on", [])),
            export=data.get("export", True),
        )
