"""Aggregation plan loader and validator."""

import re
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..core.errors import ConfigurationError
from .run import AGGREGATION_KINDS, RunSpec


class RunPlan:
    """Loads and manages an aggregation plan from YAML.

    A plan names several runs against one input dataset::

        plan: {name: astro, version: "1.0"}
        global: {input: data.h5ad, layer: counts, output_dir: out}
        runs:
          astro_pb: {kind: pseudobulk, config: {label_col: msex}}
          astro_by_sex: {kind: split, source: astro_pb, config: {field: msex}}

    String values may reference ``{global.<key>}`` or ``{plan.<key>}``.

    Parameters
    ----------
    plan_path : str or Path
        Path to the YAML plan file

    Example
    -------
    >>> plan = RunPlan("plan.yaml")
    >>> plan.load()
    >>> plan.parse_runs()
    >>> plan.validate()
    >>> order = plan.get_execution_order()
    """

    def __init__(self, plan_path: Union[str, Path]):
        self.plan_path = Path(plan_path)
        self.raw_config: Dict[str, Any] = {}
        self.runs: Dict[str, RunSpec] = {}
        self.global_settings: Dict[str, Any] = {}

    def load(self) -> None:
        """Load YAML plan file.

        Raises
        ------
        FileNotFoundError
            If plan file doesn't exist
        yaml.YAMLError
            If YAML is malformed
        """
        if not self.plan_path.exists():
            raise FileNotFoundError(f"Plan file not found: {self.plan_path}")

        with open(self.plan_path, "r") as f:
            self.raw_config = yaml.safe_load(f) or {}

        self.global_settings = {
            "plan": self.raw_config.get("plan", {}),
            "global": self.raw_config.get("global", {}),
        }

    @property
    def name(self) -> str:
        return self.global_settings.get("plan", {}).get("name", self.plan_path.stem)

    @property
    def input_path(self) -> Optional[str]:
        value = self.global_settings.get("global", {}).get("input")
        return self.resolve_paths(value) if isinstance(value, str) else value

    @property
    def layer(self) -> Optional[str]:
        return self.global_settings.get("global", {}).get("layer")

    @property
    def output_dir(self) -> Optional[str]:
        value = self.global_settings.get("global", {}).get("output_dir")
        return self.resolve_paths(value) if isinstance(value, str) else value

    def parse_runs(self) -> None:
        """Convert YAML run definitions to RunSpec objects.

        Raises
        ------
        KeyError
            If there is no 'runs' section or a run lacks 'kind'
        """
        if "runs" not in self.raw_config:
            raise KeyError("No 'runs' section in plan")

        self.runs = {}
        for name, run_def in self.raw_config["runs"].items():
            run_def = dict(run_def or {})
            run_def["config"] = self._resolve_values(run_def.get("config") or {})
            self.runs[name] = RunSpec.from_dict(run_def, name)

    def _resolve_values(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.resolve_paths(value)
        if isinstance(value, dict):
            return {k: self._resolve_values(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_values(v) for v in value]
        return value

    def resolve_paths(self, template: str) -> str:
        """Resolve templates like {global.output_dir}.

        Unresolvable references are left untouched.
        """
        if "{" not in template:
            return template

        pattern = r"\{([^}]+)\}"

        def replace_template(match):
            value: Any = self.raw_config
            for part in match.group(1).split("."):
                if not isinstance(value, dict) or part not in value:
                    return match.group(0)
                value = value[part]
            if isinstance(value, (dict, list)) or value is None:
                return match.group(0)
            return str(value)

        resolved = re.sub(pattern, replace_template, template)

        if resolved != template and "{" in resolved:
            return self.resolve_paths(resolved)

        return resolved

    def validate_dependencies(self) -> Tuple[bool, List[str]]:
        """Validate run kinds, sources and dependencies.

        Checks that every referenced run exists, that split sources are
        aggregation runs, and that there are no circular dependencies.

        Returns
        -------
        Tuple[bool, List[str]]
            (valid, errors)
        """
        errors = []

        for name, run in self.runs.items():
            _, run_errors = run.validate()
            errors.extend(run_errors)
            for dep in run.dependencies:
                if dep not in self.runs:
                    errors.append(f"Run '{name}' depends on unknown run '{dep}'")
            if run.kind == "split" and run.source in self.runs:
                if self.runs[run.source].kind not in AGGREGATION_KINDS:
                    errors.append(
                        f"Split run '{name}' source '{run.source}' is not an aggregation run"
                    )

        if len(errors) == 0:
            try:
                self.get_execution_order()
            except ConfigurationError:
                errors.append("Circular dependency detected in run dependencies")

        return (len(errors) == 0, errors)

    def validate(self) -> None:
        """Raise ConfigurationError listing every plan problem."""
        valid, errors = self.validate_dependencies()
        if not valid:
            raise ConfigurationError(
                f"Invalid plan '{self.name}' ({len(errors)} problems)",
                found=errors,
            )

    def get_execution_order(self) -> List[str]:
        """Compute run execution order via topological sort.

        Uses Kahn's algorithm; runs without mutual dependencies keep their
        declaration order.

        Raises
        ------
        ConfigurationError
            If circular dependencies are detected
        """
        in_degree = {name: 0 for name in self.runs}
        for name, run in self.runs.items():
            in_degree[name] = len([d for d in run.dependencies if d in self.runs])

        queue = deque([name for name, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            name = queue.popleft()
            order.append(name)

            for other_name, other_run in self.runs.items():
                if name in other_run.dependencies:
                    in_degree[other_name] -= 1
                    if in_degree[other_name] == 0:
                        queue.append(other_name)

        if len(order) != len(self.runs):
            raise ConfigurationError(
                "Circular dependency detected - cannot compute execution order",
                found=sorted(set(self.runs) - set(order)),
            )

        return order

    def get_run(self, name: str) -> Optional[RunSpec]:
        return self.runs.get(name)

    def list_runs(self) -> List[str]:
        return list(self.runs.keys())

    def to_dict(self) -> Dict[str, Any]:
        """Convert plan to dictionary."""
        return {
            "plan": self.global_settings.get("plan", {}),
            "global": self.global_settings.get("global", {}),
            "runs": {name: run.to_dict() for name, run in self.runs.items()},
        }

    @classmethod
    def from_dict(cls, plan_dict: Dict[str, Any]) -> "RunPlan":
        """Create a parsed RunPlan from a dictionary."""
        plan = cls.__new__(cls)
        plan.plan_path = Path(".")
        plan.raw_config = plan_dict
        plan.global_settings = {
            "plan": plan_dict.get("plan", {}),
            "global": plan_dict.get("global", {}),
        }
        plan.runs = {}
        plan.parse_runs()
        return plan
