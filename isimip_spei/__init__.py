"""
ISIMIP SPEI.

Compute the Standardized Precipitation-Evapotranspiration Index (SPEI)
from gridded ISIMIP climate model output, and partition a model x
scenario campaign into independent array tasks.

Example usage:
    from isimip_spei import spei_from_files

    spei_from_files(
        precip_files="pr_1.nc,pr_2.nc",
        tasmin_files="tasmin_1.nc,tasmin_2.nc",
        tasmax_files="tasmax_1.nc,tasmax_2.nc",
        output_path="spei.nc",
        scales=(2, 3, 6),
        calibration_period=(1979, 2014),
    )
"""

from .exceptions import (
    SpeiError,
    SourceReadError,
    ConfigurationError,
    CellComputationFailure,
    TimeOriginParseWarning,
    LowYieldWarning,
)
from .config import EngineSettings, derive_wb_path
from .cells import CellStatistics
from .monthly import to_monthly, parse_time_origin
from .pet import (
    PetMethod,
    compute_pet,
    calc_pet_thornthwaite,
    calc_pet_hargreaves,
    calc_pet_penman_monteith,
)
from .spei import (
    compute_spei,
    compute_spei_multiscale,
    fit_spei_cell,
    spei_from_files,
)
from .utils import (
    load_variable,
    convert_precip_units,
    convert_temp_units,
    save_gridded,
)
from .workload import Model, WorkloadTable, WorkloadUnit
from .batch import run_task

__version__ = "0.1.0"

__all__ = [
    # Errors
    "SpeiError",
    "SourceReadError",
    "ConfigurationError",
    "CellComputationFailure",
    "TimeOriginParseWarning",
    "LowYieldWarning",
    # Configuration
    "EngineSettings",
    "derive_wb_path",
    "CellStatistics",
    # Monthly aggregation
    "to_monthly",
    "parse_time_origin",
    # PET
    "PetMethod",
    "compute_pet",
    "calc_pet_thornthwaite",
    "calc_pet_hargreaves",
    "calc_pet_penman_monteith",
    # SPEI
    "compute_spei",
    "compute_spei_multiscale",
    "fit_spei_cell",
    "spei_from_files",
    # Utils
    "load_variable",
    "convert_precip_units",
    "convert_temp_units",
    "save_gridded",
    # Workload
    "Model",
    "WorkloadTable",
    "WorkloadUnit",
    "run_task",
]
