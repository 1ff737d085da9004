"""
Potential Evapotranspiration (PET) calculation methods.

Supports:
- Thornthwaite: mean temperature ((Tmin + Tmax) / 2), latitude
- Hargreaves: Tmin, Tmax, latitude
- Penman-Monteith (FAO-56): Tmin, Tmax, wind, radiation, humidity,
  latitude (surface pressure optional)

The formulas work on a single cell's monthly series and return mm/month.
`compute_pet` runs the selected formula over every cell of a grid; a cell
whose formula fails is left missing and the rest of the grid continues.
"""

from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
import xarray as xr

from .cells import (
    CellStatistics,
    Progress,
    cell_latitudes,
    cells_to_grid,
    grid_to_cells,
    run_cell,
)
from .exceptions import CellComputationFailure

# W/m² -> MJ/m²/day (86400 s/day / 1e6)
RADIATION_W_TO_MJ = 0.0864

# Standard surface pressure (kPa) used when no pressure field is given
STANDARD_PRESSURE_KPA = 101.325

# Latent heat of vaporization (MJ/kg)
LAMBDA = 2.45


class PetMethod(Enum):
    """PET formula, with the input variables it needs."""

    hargreaves = "hargreaves"
    thornthwaite = "thornthwaite"
    penman = "penman"

    def __str__(self):
        return self.value

    @staticmethod
    def from_string(s: str) -> "PetMethod":
        try:
            return PetMethod[s.strip().lower()]
        except KeyError:
            raise ValueError(
                f"Invalid PET method: '{s}'. "
                f"Must be one of: {', '.join(m.value for m in PetMethod)}."
            )

    @property
    def required_variables(self) -> Tuple[str, ...]:
        return _REQUIRED_VARIABLES[self]

    @property
    def optional_variables(self) -> Tuple[str, ...]:
        return _OPTIONAL_VARIABLES[self]

    @property
    def long_name(self) -> str:
        return _LONG_NAMES[self]


_REQUIRED_VARIABLES = {
    PetMethod.hargreaves: ("tasmin", "tasmax"),
    PetMethod.thornthwaite: ("tasmin", "tasmax"),
    PetMethod.penman: ("tasmin", "tasmax", "sfcwind", "rsds", "hurs"),
}

_OPTIONAL_VARIABLES = {
    PetMethod.hargreaves: (),
    PetMethod.thornthwaite: (),
    PetMethod.penman: ("ps",),
}

_LONG_NAMES = {
    PetMethod.hargreaves: "Potential Evapotranspiration (Hargreaves)",
    PetMethod.thornthwaite: "Potential Evapotranspiration (Thornthwaite)",
    PetMethod.penman: "Potential Evapotranspiration (FAO-56 Penman-Monteith)",
}


def _calendar(dates: pd.DatetimeIndex) -> Tuple[np.ndarray, np.ndarray]:
    """Mid-month day of year and days in month for each monthly date."""
    starts = pd.DatetimeIndex(dates).to_period("M").to_timestamp()
    mid = starts + pd.Timedelta(days=14)
    return np.asarray(mid.dayofyear, dtype=np.float64), np.asarray(starts.days_in_month, dtype=np.float64)


def _check_inputs(lat: float, dates: pd.DatetimeIndex, *series: np.ndarray) -> None:
    if not np.isfinite(lat) or not -90.0 <= lat <= 90.0:
        raise CellComputationFailure(f"latitude {lat} outside [-90, 90]")
    for s in series:
        if len(s) != len(dates):
            raise CellComputationFailure(
                f"series length {len(s)} does not match {len(dates)} monthly dates"
            )


def calc_pet_thornthwaite(
    tas: np.ndarray,
    lat: float,
    dates: pd.DatetimeIndex,
) -> np.ndarray:
    """
    Calculate monthly PET using the Thornthwaite method.

    Reference:
    https://www.jstor.org/stable/210739?origin=crossref

    Parameters
    ----------
    tas : np.ndarray
        Monthly mean air temperature (°C)
    lat : float
        Latitude in degrees, for the day-length correction
    dates : pd.DatetimeIndex
        Month of each value

    Returns
    -------
    np.ndarray
        PET in mm/month
    """
    tas = np.asarray(tas, dtype=np.float64)
    _check_inputs(lat, dates, tas)

    n_valid = np.isfinite(tas).sum()
    if n_valid < 12:
        raise CellComputationFailure(
            f"Thornthwaite needs at least 12 months of temperature, got {n_valid}"
        )

    tas_pos = np.clip(tas, 0, None)

    # Annual heat index from the mean annual cycle of the whole series
    heat_index = np.nansum((tas_pos / 5) ** 1.514) / (n_valid / 12)
    if heat_index <= 0:
        return np.where(np.isnan(tas), np.nan, 0.0)

    a = (6.75e-7 * heat_index**3) - (7.71e-5 * heat_index**2) + (1.79e-2 * heat_index) + 0.49

    doy, days_in_month = _calendar(dates)
    daylight = 24 / np.pi * _sunset_hour_angle(lat, doy)

    # Unadjusted PET for a 30-day month of 12-hour days
    pet_unadj = 16 * ((10 * tas_pos / heat_index) ** a)
    pet = pet_unadj * (daylight / 12) * (days_in_month / 30)

    return np.where(tas > 0, pet, np.where(np.isnan(tas), np.nan, 0.0))


def calc_pet_hargreaves(
    tasmin: np.ndarray,
    tasmax: np.ndarray,
    lat: float,
    dates: pd.DatetimeIndex,
) -> np.ndarray:
    """
    Calculate monthly PET using the Hargreaves-Samani method.

    Parameters
    ----------
    tasmin : np.ndarray
        Monthly mean of daily minimum temperature (°C)
    tasmax : np.ndarray
        Monthly mean of daily maximum temperature (°C)
    lat : float
        Latitude in degrees, for extraterrestrial radiation
    dates : pd.DatetimeIndex
        Month of each value

    Reference:
        doi.org/10.13031/2013.26773
    Returns
    -------
    np.ndarray
        PET in mm/month
    """
    tasmin = np.asarray(tasmin, dtype=np.float64)
    tasmax = np.asarray(tasmax, dtype=np.float64)
    _check_inputs(lat, dates, tasmin, tasmax)

    doy, days_in_month = _calendar(dates)

    tas = (tasmin + tasmax) / 2
    tr = np.clip(tasmax - tasmin, 0, None)

    Ra = _extraterrestrial_radiation(lat, doy)

    # PET = 0.0023 * Ra * (T + 17.8) * sqrt(TR), in mm/day
    pet = 0.0023 * Ra * (tas + 17.8) * np.sqrt(tr)
    pet = np.clip(pet, 0, None)

    return pet * days_in_month


def calc_pet_penman_monteith(
    tasmin: np.ndarray,
    tasmax: np.ndarray,
    sfcwind: np.ndarray,
    rs: np.ndarray,
    hurs: np.ndarray,
    lat: float,
    dates: pd.DatetimeIndex,
    ps: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Calculate monthly PET using the FAO-56 Penman-Monteith method.

    This is the standard reference ET method.

    Parameters
    ----------
    tasmin : np.ndarray
        Minimum air temperature (°C)
    tasmax : np.ndarray
        Maximum air temperature (°C)
    sfcwind : np.ndarray
        Wind speed (m/s) - assumed at 10m, converted to 2m
    rs : np.ndarray
        Incoming shortwave radiation (MJ/m²/day)
    hurs : np.ndarray
        Relative humidity (%)
    lat : float
        Latitude in degrees
    dates : pd.DatetimeIndex
        Month of each value
    ps : np.ndarray, optional
        Surface pressure (Pa). Default: 101325 Pa
    Reference:
    ----------
        https://www.fao.org/4/x0490e/x0490e00.htm
    Returns
    -------
    np.ndarray
        PET in mm/month
    """
    tasmin = np.asarray(tasmin, dtype=np.float64)
    tasmax = np.asarray(tasmax, dtype=np.float64)
    sfcwind = np.asarray(sfcwind, dtype=np.float64)
    rs = np.asarray(rs, dtype=np.float64)
    hurs = np.asarray(hurs, dtype=np.float64)
    _check_inputs(lat, dates, tasmin, tasmax, sfcwind, rs, hurs)

    tas = (tasmin + tasmax) / 2

    if ps is None:
        P = np.full(tas.shape, STANDARD_PRESSURE_KPA)
    else:
        ps = np.asarray(ps, dtype=np.float64)
        _check_inputs(lat, dates, ps)
        P = ps / 1000.0

    # Wind speed: 10m -> 2m (logarithmic profile)
    u2 = sfcwind * (4.87 / np.log(67.8 * 10 - 5.42))

    # Psychrometric constant (kPa/°C)
    gamma = 0.665e-3 * P

    # Saturation vapor pressure (kPa)
    es_min = 0.6108 * np.exp(17.27 * tasmin / (tasmin + 237.3))
    es_max = 0.6108 * np.exp(17.27 * tasmax / (tasmax + 237.3))
    es = (es_min + es_max) / 2

    # Actual vapor pressure from relative humidity
    ea = es * hurs / 100.0

    # Slope of saturation vapor pressure curve (kPa/°C)
    delta = 4098 * es / ((tas + 237.3) ** 2)

    doy, days_in_month = _calendar(dates)
    Rn = _net_radiation(rs, tas, ea, lat, doy)

    # Soil heat flux (negligible at monthly steps)
    G = 0

    numerator = 0.408 * delta * (Rn - G) + gamma * (900 / (tas + 273)) * u2 * (es - ea)
    denominator = delta + gamma * (1 + 0.34 * u2)

    pet = np.clip(numerator / denominator, 0, None)
    return pet * days_in_month


def _sunset_hour_angle(lat: float, doy: np.ndarray) -> np.ndarray:
    lat_rad = np.deg2rad(lat)
    decl = _solar_declination(doy)
    # Clip argument to [-1, 1] to avoid NaN from numerical precision at high latitudes
    arccos_arg = np.clip(-np.tan(lat_rad) * np.tan(decl), -1.0, 1.0)
    return np.arccos(arccos_arg)


def _solar_declination(doy: np.ndarray) -> np.ndarray:
    return 0.409 * np.sin(2 * np.pi * doy / 365 - 1.39)


def _extraterrestrial_radiation(lat: float, doy: np.ndarray) -> np.ndarray:
    """
    Calculate extraterrestrial radiation (Ra).

    Parameters
    ----------
    lat : float
        Latitude in degrees
    doy : np.ndarray
        Day of year

    Returns
    -------
    np.ndarray
        Ra in mm/day equivalent
    """
    # Solar constant
    Gsc = 0.0820  # MJ/m²/min

    lat_rad = np.deg2rad(lat)
    decl = _solar_declination(doy)
    ws = _sunset_hour_angle(lat, doy)

    # Relative distance Earth-Sun
    dr = 1 + 0.033 * np.cos(2 * np.pi * doy / 365)

    # Extraterrestrial radiation (MJ/m²/day)
    Ra = (24 * 60 / np.pi) * Gsc * dr * (
        ws * np.sin(lat_rad) * np.sin(decl) +
        np.cos(lat_rad) * np.cos(decl) * np.sin(ws)
    )

    return Ra / LAMBDA


def _net_radiation(
    rs: np.ndarray,
    tas: np.ndarray,
    ea: np.ndarray,
    lat: float,
    doy: np.ndarray,
) -> np.ndarray:
    """
    Calculate net radiation (Rn) for Penman-Monteith.

    Parameters
    ----------
    rs : np.ndarray
        Incoming shortwave radiation (MJ/m²/day)
    tas : np.ndarray
        Air temperature (°C)
    ea : np.ndarray
        Actual vapor pressure (kPa)
    lat : float
        Latitude
    doy : np.ndarray
        Day of year

    Returns
    -------
    np.ndarray
        Net radiation in MJ/m²/day
    """
    Ra = _extraterrestrial_radiation(lat, doy) * LAMBDA

    # Clear-sky radiation (simplified)
    Rso = 0.75 * Ra

    # Net shortwave radiation (albedo = 0.23 for reference crop)
    Rns = (1 - 0.23) * rs

    # Net longwave radiation (Stefan-Boltzmann)
    sigma = 4.903e-9  # MJ/K⁴/m²/day
    tas_k = tas + 273.16

    # Cloudiness factor; polar night has Rso = 0
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(Rso > 0, rs / Rso, 1.0)
    cloud_factor = 1.35 * np.clip(ratio, 0.25, 1.0) - 0.35

    humidity_factor = 0.34 - 0.14 * np.sqrt(ea)

    Rnl = sigma * (tas_k ** 4) * humidity_factor * cloud_factor

    return Rns - Rnl


def _hargreaves_cell(series: Mapping[str, np.ndarray], lat: float, dates) -> np.ndarray:
    return calc_pet_hargreaves(series["tasmin"], series["tasmax"], lat, dates)


def _thornthwaite_cell(series: Mapping[str, np.ndarray], lat: float, dates) -> np.ndarray:
    tas = (series["tasmin"] + series["tasmax"]) / 2
    return calc_pet_thornthwaite(tas, lat, dates)


def _penman_cell(series: Mapping[str, np.ndarray], lat: float, dates) -> np.ndarray:
    return calc_pet_penman_monteith(
        series["tasmin"],
        series["tasmax"],
        series["sfcwind"],
        series["rsds"],
        series["hurs"],
        lat,
        dates,
        ps=series.get("ps"),
    )


_CELL_FORMULAS: Dict[PetMethod, Callable[..., np.ndarray]] = {
    PetMethod.hargreaves: _hargreaves_cell,
    PetMethod.thornthwaite: _thornthwaite_cell,
    PetMethod.penman: _penman_cell,
}


def compute_pet(
    method: PetMethod,
    fields: Mapping[str, xr.DataArray],
    dates: pd.DatetimeIndex,
) -> Tuple[xr.DataArray, CellStatistics]:
    """
    Compute a monthly PET field, one grid cell at a time.

    Parameters
    ----------
    method : PetMethod
        PET formula
    fields : mapping of str to xr.DataArray
        Monthly fields (time, lat, lon) holding at least
        `method.required_variables`; temperatures in °C, radiation in W/m²
    dates : pd.DatetimeIndex
        Monthly dates of the time axis

    Returns
    -------
    tuple
        (PET in mm/month with the shape of the inputs, cell statistics)
    """
    missing = [v for v in method.required_variables if v not in fields]
    if missing:
        raise ValueError(f"PET method '{method}' needs variables: {', '.join(missing)}")

    formula = _CELL_FORMULAS[method]
    names = method.required_variables + tuple(
        v for v in method.optional_variables if fields.get(v) is not None
    )
    like = fields["tasmin"]
    cells = {name: grid_to_cells(fields[name]) for name in names}
    if "rsds" in cells:
        cells["rsds"] = cells["rsds"] * RADIATION_W_TO_MJ
    lats = cell_latitudes(like)

    n_times, n_cells = cells["tasmin"].shape
    pet_values = np.full((n_times, n_cells), np.nan)
    stats = CellStatistics()

    print(f"  Computing PET ({method}) for {n_cells:,} cells...", flush=True)
    progress = Progress(n_cells)

    for j in range(n_cells):
        if np.all(np.isnan(cells["tasmin"][:, j])):
            continue

        series = {name: values[:, j] for name, values in cells.items()}
        result = run_cell(formula, series, float(lats[j]), dates)
        if result.ok and result.values.shape != (n_times,):
            result = result._replace(
                values=None, error=f"formula returned shape {result.values.shape}"
            )
        stats.record(result)
        if result.ok:
            pet_values[:, j] = result.values

        progress.step(j)

    progress.done()
    stats.count_valid(pet_values)

    pet = cells_to_grid(
        pet_values,
        like,
        attrs={"units": "mm/month", "long_name": method.long_name},
    )
    return pet, stats
