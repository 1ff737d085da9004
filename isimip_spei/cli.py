"""
CLI for isimip-spei.

Usage:
    isimip-spei spei --precip a.nc,b.nc --tasmin ... --tasmax ... --out-spei spei.nc
    isimip-spei run --task-id 4 --data-base /data --output-base ~/spei_outputs
    isimip-spei check --output-base ~/spei_outputs
    isimip-spei missing --output-base ~/spei_outputs
    isimip-spei validate --output-base ~/spei_outputs
"""

import os

import click

from . import __version__
from .batch import TaskStatus, output_report, run_task, validate_output
from .config import (
    DEFAULT_CALIBRATION,
    DEFAULT_PET_METHOD,
    DEFAULT_SCALES,
    EngineSettings,
    derive_wb_path,
)
from .exceptions import SpeiError
from .pet import PetMethod
from .spei import spei_from_files
from .utils import format_size
from .workload import WorkloadTable, format_array_spec

PET_METHODS = [m.value for m in PetMethod]
DEFAULT_OUTPUT_BASE = os.path.join("~", "spei_outputs")


def _settings(pet_method, scales, calibration, per_calendar_month=False):
    try:
        return EngineSettings.from_strings(
            pet_method=pet_method,
            scales=scales,
            calibration=calibration,
            per_calendar_month=per_calendar_month,
        )
    except SpeiError as e:
        raise click.BadParameter(str(e))


output_base_option = click.option(
    "--output-base",
    envvar="SPEI_OUTPUT_BASE",
    default=DEFAULT_OUTPUT_BASE,
    show_default=True,
    help="Campaign output folder (env: SPEI_OUTPUT_BASE)",
)


@click.group()
@click.version_option(version=__version__)
def main():
    """ISIMIP SPEI Calculator.

    Compute SPEI from gridded ISIMIP climate model output, one
    model/scenario pair per batch task.
    """
    pass


@main.command()
@click.option("--precip", "-p", required=True, help="Precipitation NetCDF files (comma-separated, in time order)")
@click.option("--tasmin", required=True, help="Min temperature files (comma-separated)")
@click.option("--tasmax", required=True, help="Max temperature files (comma-separated)")
@click.option("--hurs", default=None, help="Relative humidity files (penman)")
@click.option("--rsds", default=None, help="Shortwave radiation files (penman)")
@click.option("--sfcwind", default=None, help="Wind speed files (penman)")
@click.option("--ps", default=None, help="Surface pressure files (penman, optional)")
@click.option(
    "--pet-method",
    type=click.Choice(PET_METHODS),
    default=DEFAULT_PET_METHOD,
    show_default=True,
    help="PET calculation method",
)
@click.option("--scales", "-s", default=DEFAULT_SCALES, show_default=True, help="SPEI scales, e.g. '2,3,6'")
@click.option("--calibration", "-c", default=DEFAULT_CALIBRATION, show_default=True, help="Calibration period as YYYY-YYYY")
@click.option("--per-calendar-month", is_flag=True, help="Fit one distribution per calendar month")
@click.option("--out-pet", default=None, help="Output PET NetCDF file (optional)")
@click.option("--out-wb", default=None, help="Output water balance file (default: derived from --out-pet)")
@click.option("--out-spei", "-o", required=True, help="Output SPEI NetCDF file")
def spei(precip, tasmin, tasmax, hurs, rsds, sfcwind, ps, pet_method, scales,
         calibration, per_calendar_month, out_pet, out_wb, out_spei):
    """Compute SPEI for one set of input files.

    \b
    Hargreaves / Thornthwaite: --precip --tasmin --tasmax
    Penman-Monteith: additionally --hurs --rsds --sfcwind [--ps]
    """
    settings = _settings(pet_method, scales, calibration, per_calendar_month)

    given = {"hurs": hurs, "rsds": rsds, "sfcwind": sfcwind}
    missing_inputs = [
        f"--{v}" for v in settings.pet_method.required_variables
        if v in given and not given[v]
    ]
    if missing_inputs:
        raise click.UsageError(
            f"{settings.pet_method.long_name} requires {', '.join(missing_inputs)}"
        )

    try:
        spei_from_files(
            precip_files=precip,
            tasmin_files=tasmin,
            tasmax_files=tasmax,
            output_path=out_spei,
            scales=settings.scales,
            calibration_period=settings.calibration_period,
            pet_method=settings.pet_method,
            hurs_files=hurs,
            rsds_files=rsds,
            sfcwind_files=sfcwind,
            ps_files=ps,
            pet_output_path=out_pet,
            wb_output_path=out_wb or derive_wb_path(out_pet),
            per_calendar_month=settings.per_calendar_month,
        )
    except SpeiError as e:
        raise click.ClickException(str(e))


@main.command()
@click.option(
    "--task-id",
    envvar="SLURM_ARRAY_TASK_ID",
    type=int,
    required=True,
    help="Array task identifier (env: SLURM_ARRAY_TASK_ID)",
)
@click.option("--data-base", envvar="SPEI_DATA_BASE", required=True, help="Input data folder (env: SPEI_DATA_BASE)")
@output_base_option
@click.option("--pet-method", envvar="SPEI_PET_METHOD", type=click.Choice(PET_METHODS),
              default=DEFAULT_PET_METHOD, show_default=True, help="PET calculation method")
@click.option("--scales", envvar="SPEI_SCALES", default=DEFAULT_SCALES, show_default=True, help="SPEI scales")
@click.option("--calibration", envvar="SPEI_CALIBRATION", default=DEFAULT_CALIBRATION,
              show_default=True, help="Calibration period as YYYY-YYYY")
@click.option("--per-calendar-month", is_flag=True, help="Fit one distribution per calendar month")
def run(task_id, data_base, output_base, pet_method, scales, calibration, per_calendar_month):
    """Run the model/scenario pair of one array task.

    Exits successfully without recomputing when the task's output exists.
    """
    settings = _settings(pet_method, scales, calibration, per_calendar_month)
    table = WorkloadTable()
    if not 0 <= task_id < table.size:
        raise click.BadParameter(
            f"{task_id} outside [0, {table.size})", param_hint="'--task-id'"
        )

    try:
        status = run_task(
            task_id,
            data_base=os.path.expanduser(data_base),
            output_base=os.path.expanduser(output_base),
            settings=settings,
            table=table,
        )
    except SpeiError as e:
        raise click.ClickException(str(e))

    if status is TaskStatus.SKIPPED:
        print("Nothing to do.")
    else:
        print("Job finished successfully!")


@main.command()
@output_base_option
def check(output_base):
    """Show which task outputs exist."""
    table = WorkloadTable()
    report = output_report(table, os.path.expanduser(output_base))

    print(f"{'Task':<5} {'Model_Scenario':<25} {'Status':<10} {'Size':<10}")
    print(f"{'-'*4:<5} {'-'*25} {'-'*10} {'-'*10}")
    for status in report:
        state = "[OK]" if status.exists else "[MISSING]"
        size = format_size(status.size) if status.exists else "-"
        print(f"{status.unit.task_id:<5} {status.unit.label:<25} {state:<10} {size:<10}")

    done = sum(s.exists for s in report)
    print(f"\nProgress: {done}/{table.size} complete ({done * 100 // table.size}%)")


@main.command()
@output_base_option
def missing(output_base):
    """Print the task ids whose output is missing, for resubmission.

    Example:
        sbatch --array=$(isimip-spei missing) batch_spei.sh
    """
    table = WorkloadTable()
    ids = table.missing_task_ids(os.path.expanduser(output_base))
    if not ids:
        click.echo("All outputs exist! Nothing to resubmit.", err=True)
        return
    for task_id in ids:
        click.echo(f"  [MISSING] Task {task_id}: {table.unit(task_id).label}", err=True)
    print(format_array_spec(ids))


@main.command()
@output_base_option
def validate(output_base):
    """Check that every existing output is a readable SPEI file."""
    table = WorkloadTable()
    valid = invalid = 0
    for status in output_report(table, os.path.expanduser(output_base)):
        if not status.exists:
            continue
        problem = validate_output(status.path)
        if problem is None:
            print(f"[OK] Task {status.unit.task_id}: {status.unit.label}")
            valid += 1
        else:
            print(f"[ERROR] Task {status.unit.task_id}: {status.unit.label} - {problem}")
            invalid += 1

    print("\nValidation summary:")
    print(f"  Valid: {valid}")
    print(f"  Invalid: {invalid}")
    print(f"  Missing: {table.size - valid - invalid}")
    if invalid:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
