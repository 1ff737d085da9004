"""
Workload partitioning for SPEI batch campaigns.

A campaign is the cross product of climate models and scenarios. Each
(model, scenario) pair is one workload unit, addressed by an integer task
identifier in [0, n_models * n_scenarios):

    model_index    = task_id // n_scenarios
    scenario_index = task_id %  n_scenarios

The identifier of a pair only depends on the order of the model and
scenario tables, so those tables must not change while a campaign has
tasks queued or outputs on disk. Completion is read from storage: a unit
is done when its SPEI output file exists.
"""

import os
from dataclasses import dataclass
from typing import Callable, Iterator, List, Sequence, Tuple

Exists = Callable[[str], bool]


@dataclass(frozen=True)
class Model:
    """Climate model: lowercase `name` for files, `directory` for input folders."""

    name: str
    directory: str


@dataclass(frozen=True)
class WorkloadUnit:
    task_id: int
    model: Model
    scenario: str

    @property
    def label(self) -> str:
        return f"{self.model.name}_{self.scenario}"


DEFAULT_MODELS: Tuple[Model, ...] = (
    Model("gfdl-esm4", "GFDL-ESM4"),
    Model("ukesm1-0-ll", "UKESM1-0-LL"),
    Model("mpi-esm1-2-hr", "MPI-ESM1-2-HR"),
    Model("ipsl-cm6a-lr", "IPSL-CM6A-LR"),
    Model("mri-esm2-0", "MRI-ESM2-0"),
)

DEFAULT_SCENARIOS: Tuple[str, ...] = ("ssp126", "ssp370", "ssp585")


class WorkloadTable:
    """Deterministic task identifier <-> (model, scenario) table."""

    def __init__(
        self,
        models: Sequence[Model] = DEFAULT_MODELS,
        scenarios: Sequence[str] = DEFAULT_SCENARIOS,
    ):
        if not models or not scenarios:
            raise ValueError("A campaign needs at least one model and one scenario")
        if len({m.name for m in models}) != len(models):
            raise ValueError("Duplicate model names in campaign table")
        if len(set(scenarios)) != len(scenarios):
            raise ValueError("Duplicate scenarios in campaign table")
        self.models = tuple(models)
        self.scenarios = tuple(scenarios)

    @property
    def size(self) -> int:
        return len(self.models) * len(self.scenarios)

    def indices(self, task_id: int) -> Tuple[int, int]:
        """(model_index, scenario_index) of a task identifier."""
        if not 0 <= task_id < self.size:
            raise ValueError(f"Task id {task_id} outside [0, {self.size})")
        return task_id // len(self.scenarios), task_id % len(self.scenarios)

    def task_id(self, model_index: int, scenario_index: int) -> int:
        if not 0 <= model_index < len(self.models):
            raise ValueError(f"Model index {model_index} outside [0, {len(self.models)})")
        if not 0 <= scenario_index < len(self.scenarios):
            raise ValueError(
                f"Scenario index {scenario_index} outside [0, {len(self.scenarios)})"
            )
        return model_index * len(self.scenarios) + scenario_index

    def unit(self, task_id: int) -> WorkloadUnit:
        model_index, scenario_index = self.indices(task_id)
        return WorkloadUnit(task_id, self.models[model_index], self.scenarios[scenario_index])

    def units(self) -> Iterator[WorkloadUnit]:
        """All units in task identifier order."""
        for task_id in range(self.size):
            yield self.unit(task_id)

    # Output layout: <base>/<model>_<scenario>/spei_<model>_<scenario>.nc

    @staticmethod
    def output_dir(output_base: str, unit: WorkloadUnit) -> str:
        return os.path.join(output_base, unit.label)

    def spei_path(self, output_base: str, unit: WorkloadUnit) -> str:
        return os.path.join(self.output_dir(output_base, unit), f"spei_{unit.label}.nc")

    def pet_path(self, output_base: str, unit: WorkloadUnit, pet_method: str) -> str:
        return os.path.join(
            self.output_dir(output_base, unit), f"pet_{pet_method}_{unit.label}.nc"
        )

    def is_complete(
        self,
        unit: WorkloadUnit,
        output_base: str,
        exists: Exists = os.path.isfile,
    ) -> bool:
        return exists(self.spei_path(output_base, unit))

    def missing_task_ids(
        self,
        output_base: str,
        exists: Exists = os.path.isfile,
    ) -> List[int]:
        """Ascending identifiers of every unit whose output does not exist."""
        return [
            unit.task_id for unit in self.units()
            if not self.is_complete(unit, output_base, exists)
        ]


def format_array_spec(task_ids: Sequence[int]) -> str:
    """Comma-joined identifiers, e.g. for `sbatch --array=0,4,7`."""
    return ",".join(str(t) for t in task_ids)
