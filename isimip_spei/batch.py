"""
Batch execution of one workload unit, plus campaign bookkeeping.

`run_task` is what every array task runs: it resolves its (model,
scenario) pair, exits early when the output already exists, collects the
input files of the pair and runs the SPEI engine. `output_report`,
`validate_output` and `WorkloadTable.missing_task_ids` read the state of
a campaign from the output directory.
"""

import glob
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

import xarray as xr

from .config import EngineSettings, derive_wb_path
from .exceptions import ConfigurationError, SourceReadError, SpeiError
from .spei import spei_from_files
from .utils import format_size
from .workload import WorkloadTable, WorkloadUnit

SPEI_VAR_RE = re.compile(r"^spei_\d+$")


class TaskStatus(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class OutputStatus:
    unit: WorkloadUnit
    path: str
    size: Optional[int]

    @property
    def exists(self) -> bool:
        return self.size is not None


def input_dirs(data_base: str, unit: WorkloadUnit) -> List[str]:
    """Historical and scenario input folders of a unit."""
    return [
        os.path.join(data_base, "historical", f"{unit.model.directory}_conus"),
        os.path.join(data_base, unit.scenario, f"{unit.model.directory}_conus"),
    ]


def build_file_list(dirs: Sequence[str], variable: str) -> List[str]:
    """
    Input files of one variable, historical folder first, each folder sorted.

    Files are matched as '*_<variable>_*.nc'; snowfall ('prsn') files never
    count as precipitation.
    """
    pattern = f"*_{variable}_*.nc"
    files = []
    for d in dirs:
        matched = sorted(glob.glob(os.path.join(d, pattern)))
        if variable == "pr":
            matched = [f for f in matched if "prsn" not in os.path.basename(f)]
        files.extend(matched)

    if not files:
        raise SourceReadError(f"No files found for pattern {pattern} in {', '.join(dirs)}")
    return files


def collect_inputs(data_base: str, unit: WorkloadUnit, settings: EngineSettings) -> Dict[str, List[str]]:
    dirs = input_dirs(data_base, unit)
    for label, d in zip(("Historical", "Future"), dirs):
        if not os.path.isdir(d):
            raise ConfigurationError(f"{label} directory not found: {d}")

    method = settings.pet_method
    files = {}
    for variable in ("pr",) + method.required_variables:
        files[variable] = build_file_list(dirs, variable)
    for variable in method.optional_variables:
        try:
            files[variable] = build_file_list(dirs, variable)
        except SourceReadError:
            print(f"  {variable}: no files, using defaults")

    counts = {v: len(f) for v, f in files.items()}
    for variable, n in counts.items():
        print(f"  {variable.upper()}: {n} files")
    if len(set(counts.values())) > 1:
        print("WARNING: File counts don't match! This may indicate a problem.")
    return files


def run_task(
    task_id: int,
    data_base: str,
    output_base: str,
    settings: EngineSettings,
    table: Optional[WorkloadTable] = None,
) -> TaskStatus:
    """
    Run the workload unit of `task_id`.

    Returns TaskStatus.SKIPPED without any work when its SPEI output
    already exists. File and configuration problems raise.
    """
    table = table or WorkloadTable()
    unit = table.unit(task_id)

    print("======================================")
    print(f"Array Task: {task_id}")
    print("======================================")
    print(f"Model: {unit.model.directory} ({unit.model.name})")
    print(f"Scenario: {unit.scenario}")
    print(f"PET method: {settings.pet_method}")
    print(f"SPEI scales: {','.join(str(s) for s in settings.scales)}")
    print(f"Calibration: {settings.calibration_label}")
    print("======================================", flush=True)

    spei_file = table.spei_path(output_base, unit)
    if os.path.isfile(spei_file):
        print("OUTPUT ALREADY EXISTS")
        print(f"File: {spei_file}")
        print(f"Size: {format_size(os.path.getsize(spei_file))}")
        print("Delete this file to rerun")
        return TaskStatus.SKIPPED

    print("Building file lists...")
    files = collect_inputs(data_base, unit, settings)

    os.makedirs(table.output_dir(output_base, unit), exist_ok=True)
    pet_file = table.pet_path(output_base, unit, str(settings.pet_method))

    spei_from_files(
        precip_files=files["pr"],
        tasmin_files=files["tasmin"],
        tasmax_files=files["tasmax"],
        output_path=spei_file,
        scales=settings.scales,
        calibration_period=settings.calibration_period,
        pet_method=settings.pet_method,
        hurs_files=files.get("hurs"),
        rsds_files=files.get("rsds"),
        sfcwind_files=files.get("sfcwind"),
        ps_files=files.get("ps"),
        pet_output_path=pet_file,
        wb_output_path=derive_wb_path(pet_file),
        per_calendar_month=settings.per_calendar_month,
    )

    if not os.path.isfile(spei_file):
        raise SpeiError(f"SPEI output file was not created: {spei_file}")

    print(f"COMPLETE: {unit.label}")
    print(f"  PET: {format_size(os.path.getsize(pet_file))}")
    print(f"  SPEI: {format_size(os.path.getsize(spei_file))}", flush=True)
    return TaskStatus.COMPLETED


def output_report(table: WorkloadTable, output_base: str) -> List[OutputStatus]:
    """Existence and size of every unit's SPEI output, in task order."""
    report = []
    for unit in table.units():
        path = table.spei_path(output_base, unit)
        size = os.path.getsize(path) if os.path.isfile(path) else None
        report.append(OutputStatus(unit, path, size))
    return report


def validate_output(path: str) -> Optional[str]:
    """None if `path` opens as NetCDF with at least one spei_NN variable, else the problem."""
    try:
        with xr.open_dataset(path, decode_times=False) as ds:
            names = [str(v) for v in ds.data_vars]
    except (OSError, ValueError) as e:
        return f"Invalid NetCDF file ({e})"
    if not any(SPEI_VAR_RE.match(n) for n in names):
        return "No SPEI variables found"
    return None
