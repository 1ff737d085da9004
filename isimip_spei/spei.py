"""
Standardized Precipitation Evapotranspiration Index (SPEI) calculation.

Reference:
    https://journals.ametsoc.org/doi/10.1175/2009JCLI2909.1

Water balance (P - PET) is accumulated over a trailing window of `scale`
months, a log-logistic distribution is fitted to the accumulated values of
the calibration years, and every accumulated value of the series is
mapped to a standard-normal quantile under that distribution. Each grid
cell is fitted on its own; a cell whose fit fails is left missing.
"""

import warnings
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import xarray as xr
from scipy import stats

from .cells import (
    LOW_YIELD_FRACTION,
    CellStatistics,
    Progress,
    cells_to_grid,
    grid_to_cells,
    run_cell,
)
from .exceptions import CellComputationFailure, ConfigurationError, LowYieldWarning
from .monthly import FLUX, MEAN, TEMPERATURE, to_monthly
from .pet import PetMethod, compute_pet
from .utils import (
    get_calibration_mask,
    load_variable,
    rolling_sum,
    save_gridded,
)

# Pooled fit: minimum accumulated values inside the calibration window
MIN_POOLED_SAMPLES = 12

# CDF bounds before the normal quantile transform
CDF_EPS = 1e-6

FileList = Union[str, Sequence[str]]


def spei_var_name(scale: int) -> str:
    return f"spei_{scale:02d}"


def default_min_samples(
    calibration_period: Tuple[int, int],
    per_calendar_month: bool = False,
) -> int:
    """
    Minimum calibration samples a fit needs.

    Per calendar month there is one sample per calibration year:
    max(5, calibration_years - 1), capped at calibration_years.
    A pooled fit needs MIN_POOLED_SAMPLES.
    """
    if not per_calendar_month:
        return MIN_POOLED_SAMPLES
    cal_years = calibration_period[1] - calibration_period[0] + 1
    return min(max(5, cal_years - 1), cal_years)


def _spei_loglogistic_fit_transform(
    cal_data: np.ndarray,
    all_data: np.ndarray,
    min_samples: int,
) -> np.ndarray:
    """
    Fit log-logistic distribution on calibration data and transform all data.

    Parameters
    ----------
    cal_data : np.ndarray
        1D array of calibration period accumulated water balance
    all_data : np.ndarray
        1D array of all accumulated water balance to transform
    min_samples : int
        Minimum finite calibration samples for fitting

    Returns
    -------
    np.ndarray
        SPEI values (same length as all_data)

    Raises
    ------
    CellComputationFailure
        Too few samples, a constant sample, or a failed fit.
    """
    cal_valid = cal_data[np.isfinite(cal_data)]

    if len(cal_valid) < min_samples:
        raise CellComputationFailure(
            f"{len(cal_valid)} calibration samples, at least {min_samples} required"
        )
    if np.ptp(cal_valid) == 0:
        raise CellComputationFailure(
            f"constant calibration sample ({cal_valid[0]:g}), cannot fit distribution"
        )

    # Shift data to positive if needed
    shift = 0.0
    if np.min(cal_valid) <= 0:
        shift = -np.min(cal_valid) + 1

    cal_shifted = cal_valid + shift

    # Fit log-logistic (Fisk distribution)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            c, _, scale = stats.fisk.fit(cal_shifted, floc=0)
        except (ValueError, RuntimeError, FloatingPointError) as e:
            raise CellComputationFailure(f"log-logistic fit failed: {e}") from e

    if not (np.isfinite(c) and np.isfinite(scale) and c > 0 and scale > 0):
        raise CellComputationFailure(
            f"log-logistic fit gave invalid parameters (c={c}, scale={scale})"
        )

    spei = np.full(len(all_data), np.nan)
    valid_mask = np.isfinite(all_data)

    if not np.any(valid_mask):
        return spei

    all_shifted = all_data[valid_mask] + shift

    # Values below the shifted support get the lowest probability
    cdf = np.full(len(all_shifted), CDF_EPS)
    pos_mask = all_shifted > 0
    if np.any(pos_mask):
        cdf[pos_mask] = stats.fisk.cdf(all_shifted[pos_mask], c, loc=0, scale=scale)

    cdf = np.clip(cdf, CDF_EPS, 1 - CDF_EPS)
    spei[valid_mask] = stats.norm.ppf(cdf)

    return spei


def fit_spei_cell(
    wb: np.ndarray,
    dates: pd.DatetimeIndex,
    scale: int,
    calibration_period: Tuple[int, int],
    min_samples: Optional[int] = None,
    per_calendar_month: bool = False,
) -> np.ndarray:
    """
    SPEI series of one grid cell.

    Parameters
    ----------
    wb : np.ndarray
        Monthly water balance (mm/month)
    dates : pd.DatetimeIndex
        Month of each value, starting at the first available month
    scale : int
        Accumulation period in months
    calibration_period : tuple of int
        (start_year, end_year) inclusive
    min_samples : int, optional
        Minimum calibration samples; see `default_min_samples`
    per_calendar_month : bool
        Fit one distribution per calendar month instead of one for the
        whole calibration window

    Returns
    -------
    np.ndarray
        SPEI values; the first scale-1 months are NaN
    """
    wb = np.asarray(wb, dtype=np.float64)
    if len(wb) != len(dates):
        raise CellComputationFailure(
            f"water balance has {len(wb)} values for {len(dates)} dates"
        )
    if min_samples is None:
        min_samples = default_min_samples(calibration_period, per_calendar_month)

    cal_mask = get_calibration_mask(dates, calibration_period)
    if not cal_mask.any():
        raise CellComputationFailure(
            f"calibration period {calibration_period[0]}-{calibration_period[1]} "
            f"outside data years {dates[0].year}-{dates[-1].year}"
        )

    wb_acc = rolling_sum(wb, scale)

    if not per_calendar_month:
        return _spei_loglogistic_fit_transform(wb_acc[cal_mask], wb_acc, min_samples)

    spei = np.full(len(wb_acc), np.nan)
    months = np.asarray(dates.month)
    n_fitted = 0
    first_error = None
    for month in range(1, 13):
        month_mask = months == month
        if not month_mask.any():
            continue
        try:
            spei[month_mask] = _spei_loglogistic_fit_transform(
                wb_acc[month_mask & cal_mask], wb_acc[month_mask], min_samples
            )
        except CellComputationFailure as e:
            # only this calendar month stays missing
            if first_error is None:
                first_error = f"month {month}: {e}"
            continue
        n_fitted += 1

    if n_fitted == 0:
        raise CellComputationFailure(f"no calendar month could be fitted ({first_error})")
    return spei


def warn_if_low_yield(cell_stats: CellStatistics, label: str) -> None:
    if cell_stats.low_yield:
        warnings.warn(
            f"Less than {100 * LOW_YIELD_FRACTION:.0f}% valid {label} values "
            f"({100 * cell_stats.valid_fraction:.1f}%). Check your data.",
            LowYieldWarning,
            stacklevel=2,
        )


def compute_spei(
    wb: xr.DataArray,
    scale: int,
    calibration_period: Tuple[int, int] = (1979, 2014),
    min_samples: Optional[int] = None,
    per_calendar_month: bool = False,
) -> Tuple[xr.DataArray, CellStatistics]:
    """
    Compute Standardized Precipitation Evapotranspiration Index.

    Parameters
    ----------
    wb : xr.DataArray
        Monthly water balance (P - PET) in mm/month, dims (time, lat, lon)
    scale : int
        Accumulation period in months
    calibration_period : tuple of int
        (start_year, end_year) for fitting distribution
    min_samples : int, optional
        Minimum samples required for fitting.
        Default: see `default_min_samples`
    per_calendar_month : bool
        Fit one distribution per calendar month

    Returns
    -------
    tuple
        (SPEI values, dimensionless standard normal; cell statistics)
    """
    if scale < 1:
        raise ConfigurationError(f"Accumulation scale must be positive: {scale}")

    dates = pd.DatetimeIndex(wb.indexes["time"])
    data_array = grid_to_cells(wb)
    n_times, n_cells = data_array.shape

    spei_values = np.full((n_times, n_cells), np.nan)
    cell_stats = CellStatistics()

    print(f"  Fitting {n_cells:,} cells...", flush=True)
    progress = Progress(n_cells)

    for j in range(n_cells):
        wb_ts = data_array[:, j]
        if np.all(np.isnan(wb_ts)):
            continue

        result = run_cell(
            fit_spei_cell,
            wb_ts,
            dates,
            scale,
            calibration_period,
            min_samples=min_samples,
            per_calendar_month=per_calendar_month,
        )
        cell_stats.record(result)
        if result.ok:
            spei_values[:, j] = result.values

        progress.step(j)

    progress.done()
    cell_stats.count_valid(spei_values)
    cell_stats.report(f"SPEI-{scale}")
    warn_if_low_yield(cell_stats, f"SPEI-{scale}")

    spei = cells_to_grid(
        spei_values,
        wb,
        attrs={
            "units": "1",
            "long_name": f"SPEI {scale}-month",
            "scale": scale,
            "distribution": "log-logistic (fisk)",
            "calibration_period": f"{calibration_period[0]}-{calibration_period[1]}",
        },
    )
    return spei, cell_stats


def compute_spei_multiscale(
    wb: xr.DataArray,
    scales: Iterable[int],
    calibration_period: Tuple[int, int] = (1979, 2014),
    min_samples: Optional[int] = None,
    per_calendar_month: bool = False,
) -> Tuple[Dict[str, xr.DataArray], Dict[int, CellStatistics]]:
    """Compute SPEI for multiple time scales, keyed spei_02, spei_03, ..."""
    fields = {}
    scale_stats = {}

    for scale in scales:
        var_name = spei_var_name(scale)
        print(f"\nSPEI-{scale}:", flush=True)
        fields[var_name], scale_stats[scale] = compute_spei(
            wb,
            scale=scale,
            calibration_period=calibration_period,
            min_samples=min_samples,
            per_calendar_month=per_calendar_month,
        )

    return fields, scale_stats


def _load_inputs(
    pet_method: PetMethod,
    files: Mapping[str, Optional[FileList]],
) -> Dict[str, xr.DataArray]:
    """Load precipitation plus the variables the PET method declares."""
    needed = ("pr",) + pet_method.required_variables
    optional = pet_method.optional_variables

    fields = {}
    for name in needed + optional:
        paths = files.get(name)
        if not paths:
            if name in needed:
                raise ConfigurationError(
                    f"PET method '{pet_method}' requires --{name} input files"
                )
            continue
        print(f"Loading {name}...", flush=True)
        fields[name] = load_variable(paths, name)
    return fields


_KINDS = {
    "pr": FLUX,
    "tasmin": TEMPERATURE,
    "tasmax": TEMPERATURE,
    "hurs": MEAN,
    "rsds": MEAN,
    "sfcwind": MEAN,
    "ps": MEAN,
}


def spei_from_files(
    precip_files: FileList,
    tasmin_files: FileList,
    tasmax_files: FileList,
    output_path: str,
    scales: Sequence[int] = (2, 3, 6),
    calibration_period: Tuple[int, int] = (1979, 2014),
    pet_method: PetMethod = PetMethod.hargreaves,
    hurs_files: Optional[FileList] = None,
    rsds_files: Optional[FileList] = None,
    sfcwind_files: Optional[FileList] = None,
    ps_files: Optional[FileList] = None,
    pet_output_path: Optional[str] = None,
    wb_output_path: Optional[str] = None,
    per_calendar_month: bool = False,
) -> Dict[int, CellStatistics]:
    """
    Compute SPEI from NetCDF files and save output.

    Loads the inputs the PET method needs, brings them to monthly
    cadence, computes PET and water balance, fits SPEI for every scale
    and writes the index fields (and optionally PET / water balance).
    Nothing is written before all fields are computed.

    Returns
    -------
    dict
        Cell statistics per scale
    """
    calibration = f"{calibration_period[0]}-{calibration_period[1]}"
    print("==============================================")
    print("ISIMIP SPEI")
    print("==============================================")
    print(f"PET method: {pet_method}")
    print(f"SPEI scales: {', '.join(str(s) for s in scales)}")
    print(f"Calibration: {calibration}")
    print("==============================================\n", flush=True)

    files = {
        "pr": precip_files,
        "tasmin": tasmin_files,
        "tasmax": tasmax_files,
        "hurs": hurs_files,
        "rsds": rsds_files,
        "sfcwind": sfcwind_files,
        "ps": ps_files,
    }
    fields = _load_inputs(pet_method, files)

    pr = fields["pr"]
    print(f"  Grid: {pr.sizes['lon']} lon x {pr.sizes['lat']} lat x {pr.sizes['time']} time")

    print("Converting to monthly data...", flush=True)
    monthly = to_monthly(fields, {name: _KINDS[name] for name in fields})

    print(f"\nComputing PET ({pet_method} method)...", flush=True)
    pet, pet_stats = compute_pet(pet_method, monthly.fields, monthly.dates)
    pet_stats.report("PET")
    warn_if_low_yield(pet_stats, "PET")

    wb = monthly.fields["pr"] - pet
    wb.attrs = {"units": "mm/month", "long_name": "Water Balance (P - PET)"}

    print("\nComputing SPEI...", flush=True)
    spei_fields, scale_stats = compute_spei_multiscale(
        wb,
        scales,
        calibration_period=calibration_period,
        per_calendar_month=per_calendar_month,
    )

    provenance = {
        "calibration_period": calibration,
        "pet_method": str(pet_method),
        "institution": "ISIMIP Drought Indices",
        "source": "isimip-spei",
    }

    if pet_output_path:
        print(f"\nSaving PET to: {pet_output_path}")
        save_gridded(
            {"pet": pet},
            pet_output_path,
            monthly.origin,
            attrs={"title": f"PET ({pet_method} method)", **provenance},
        )
    if wb_output_path:
        print(f"Saving water balance to: {wb_output_path}")
        save_gridded(
            {"wb": wb},
            wb_output_path,
            monthly.origin,
            attrs={"title": "Water Balance (Precipitation - PET)", **provenance},
        )

    print(f"\nSaving SPEI to: {output_path}")
    for var_name, field in spei_fields.items():
        n_valid = int(np.isfinite(field.values).sum())
        print(f"  {var_name}: {100 * n_valid / field.size:.1f}% valid values ({n_valid}/{field.size})")

    save_gridded(
        spei_fields,
        output_path,
        monthly.origin,
        attrs={
            "title": "Standardized Precipitation Evapotranspiration Index",
            "references": "Vicente-Serrano et al. (2010)",
            **provenance,
        },
    )
    print("\nDone!", flush=True)
    return scale_stats
