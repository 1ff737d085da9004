"""
Temporal resolution detection and monthly aggregation.

Source files come either at daily (sub-monthly) or monthly cadence. Daily
data are collapsed to one value per calendar year-month: precipitation
flux is summed as a depth (flux × 86400 s/day over the days present),
all other quantities are averaged ignoring missing samples. Monthly data
pass through; their precipitation flux is turned into a depth with a
fixed 30-day month.
"""

import re
import warnings
from datetime import date
from typing import Dict, Mapping, NamedTuple, Tuple

import numpy as np
import pandas as pd
import xarray as xr

from .exceptions import SourceReadError, TimeOriginParseWarning
from .utils import SECONDS_PER_DAY, convert_precip_units, convert_temp_units

# Median step (days) below which a series counts as sub-monthly
SUB_MONTHLY_THRESHOLD_DAYS = 5.0

# Flux-to-depth multiplier for data that is already monthly. This is a
# coarse approximation, not the calendar month length; changing it changes
# every downstream value.
MONTHLY_FLUX_DAYS = 30

FALLBACK_ORIGIN = date(1850, 1, 1)

_UNITS_RE = re.compile(
    r"^\s*(?P<unit>\w+)\s+since\s+(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})"
)

_UNIT_DAYS = {
    "days": 1.0,
    "day": 1.0,
    "d": 1.0,
    "hours": 1.0 / 24,
    "hour": 1.0 / 24,
    "h": 1.0 / 24,
    "minutes": 1.0 / 1440,
    "minute": 1.0 / 1440,
    "seconds": 1.0 / SECONDS_PER_DAY,
    "second": 1.0 / SECONDS_PER_DAY,
    "s": 1.0 / SECONDS_PER_DAY,
}

# How each kind of field is aggregated to months
FLUX = "flux"
TEMPERATURE = "temperature"
MEAN = "mean"


class TimeAxis(NamedTuple):
    """Decoded time axis of a source series."""

    dates: pd.DatetimeIndex
    origin: date
    offsets_days: np.ndarray


class MonthlyFields(NamedTuple):
    """Fields at monthly cadence, sharing one monthly time axis."""

    fields: Dict[str, xr.DataArray]
    dates: pd.DatetimeIndex
    origin: date
    sub_monthly: bool


def parse_time_origin(units) -> Tuple[date, float]:
    """
    Parse '<unit> since YYYY-MM-DD ...' into (origin, days per unit).

    Absent or unparsable units fall back to 'days since 1850-01-01' and
    emit a TimeOriginParseWarning; dates decoded afterwards may be wrong.
    """
    if not units:
        warnings.warn(
            f"No time units attribute found, assuming 'days since {FALLBACK_ORIGIN:%Y-%m-%d}'",
            TimeOriginParseWarning,
            stacklevel=2,
        )
        return FALLBACK_ORIGIN, 1.0

    match = _UNITS_RE.match(str(units))
    unit = match.group("unit").lower() if match else None
    if match is None or unit not in _UNIT_DAYS:
        warnings.warn(
            f"Could not parse time origin from '{units}', using {FALLBACK_ORIGIN:%Y-%m-%d}",
            TimeOriginParseWarning,
            stacklevel=2,
        )
        return FALLBACK_ORIGIN, 1.0

    try:
        origin = date(
            int(match.group("year")),
            int(match.group("month")),
            int(match.group("day")),
        )
    except ValueError:
        warnings.warn(
            f"Invalid origin date in '{units}', using {FALLBACK_ORIGIN:%Y-%m-%d}",
            TimeOriginParseWarning,
            stacklevel=2,
        )
        return FALLBACK_ORIGIN, 1.0

    return origin, _UNIT_DAYS[unit]


def decode_time(time: xr.DataArray) -> TimeAxis:
    """Decode raw time offsets to dates using the origin in time.attrs['units']."""
    origin, unit_days = parse_time_origin(time.attrs.get("units"))
    offsets = np.asarray(time.values, dtype=np.float64) * unit_days
    # second resolution keeps early origins such as 1601-01-01 representable
    seconds = np.round(offsets * SECONDS_PER_DAY).astype("timedelta64[s]")
    dates = pd.DatetimeIndex(np.datetime64(origin, "s") + seconds)
    return TimeAxis(dates=dates, origin=origin, offsets_days=offsets)


def median_step_days(offsets_days: np.ndarray) -> float:
    if len(offsets_days) < 2:
        return float("nan")
    return float(np.median(np.diff(offsets_days)))


def is_sub_monthly(offsets_days: np.ndarray) -> bool:
    """True when the median step between samples is below 5 days."""
    return median_step_days(offsets_days) < SUB_MONTHLY_THRESHOLD_DAYS


def month_keys(dates: pd.DatetimeIndex) -> np.ndarray:
    """Integer key year*12 + (month-1) per sample."""
    return np.asarray(dates.year) * 12 + (np.asarray(dates.month) - 1)


def month_starts(keys: np.ndarray) -> pd.DatetimeIndex:
    return pd.DatetimeIndex(
        [pd.Timestamp(year=int(k // 12), month=int(k % 12) + 1, day=1) for k in keys]
    )


def _aggregate(da: xr.DataArray, dates: pd.DatetimeIndex, reducer) -> xr.DataArray:
    keys = month_keys(dates)
    unique_keys = np.unique(keys)
    values = da.values
    out = np.empty((len(unique_keys),) + values.shape[1:], dtype=np.float64)

    for m, key in enumerate(unique_keys):
        out[m] = reducer(values[keys == key])

    return xr.DataArray(
        out,
        dims=da.dims,
        coords={"time": month_starts(unique_keys), "lat": da.lat, "lon": da.lon},
        attrs=dict(da.attrs),
        name=da.name,
    )


def _flux_sum(block: np.ndarray) -> np.ndarray:
    return (block * SECONDS_PER_DAY).sum(axis=0)


def _nan_mean(block: np.ndarray) -> np.ndarray:
    with warnings.catch_warnings():
        # all-missing months stay NaN
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanmean(block, axis=0)


def aggregate_flux_sum(da: xr.DataArray, dates: pd.DatetimeIndex) -> xr.DataArray:
    """
    Sum a flux (kg/m²/s) per calendar month into a depth in mm/month.

    Month length is implied by the number of daily samples present.
    """
    monthly = _aggregate(da, dates, _flux_sum)
    monthly.attrs["units"] = "mm/month"
    return monthly


def aggregate_mean(da: xr.DataArray, dates: pd.DatetimeIndex) -> xr.DataArray:
    """Average per calendar month, ignoring missing samples."""
    return _aggregate(da, dates, _nan_mean)


def to_monthly(
    fields: Mapping[str, xr.DataArray],
    kinds: Mapping[str, str],
    reference: str = "pr",
) -> MonthlyFields:
    """
    Bring a set of fields sharing one time axis to monthly cadence.

    Parameters
    ----------
    fields : mapping of str to xr.DataArray
        Loaded fields with raw (undecoded) time coordinates
    kinds : mapping of str to str
        FLUX, TEMPERATURE or MEAN per field name
    reference : str
        Field whose time axis drives detection and decoding

    Returns
    -------
    MonthlyFields
    """
    ref = fields[reference]
    n_time = ref.sizes["time"]
    if n_time == 0:
        raise SourceReadError(f"'{reference}' has no time steps")
    axis = decode_time(ref.time)

    aligned = {}
    for name, da in fields.items():
        if da.sizes["time"] != n_time:
            raise SourceReadError(
                f"'{name}' has {da.sizes['time']} time steps, "
                f"'{reference}' has {n_time}"
            )
        if da.time.attrs.get("units") != ref.time.attrs.get("units"):
            raise SourceReadError(
                f"'{name}' time units ('{da.time.attrs.get('units')}') differ from "
                f"'{reference}' ('{ref.time.attrs.get('units')}')"
            )
        if not np.allclose(da.time.values, ref.time.values):
            raise SourceReadError(
                f"'{name}' covers different time steps than '{reference}'"
            )
        if da.shape != ref.shape:
            raise SourceReadError(
                f"'{name}' grid {da.shape[1:]} differs from '{reference}' grid {ref.shape[1:]}"
            )
        for coord in ("lat", "lon"):
            if not np.allclose(da[coord].values, ref[coord].values):
                raise SourceReadError(f"'{name}' {coord} axis differs from '{reference}'")
        aligned[name] = da.assign_coords(lat=ref["lat"].values, lon=ref["lon"].values)
    fields = aligned

    print(f"  Time values range: {axis.offsets_days[0]:.1f} to {axis.offsets_days[-1]:.1f} days")
    step = median_step_days(axis.offsets_days)
    sub_monthly = is_sub_monthly(axis.offsets_days)
    print(f"  Time step difference: {step:.1f} days")
    print(f"  Is daily: {sub_monthly}")

    monthly = {}
    if sub_monthly:
        keys = month_keys(axis.dates)
        n_months = len(np.unique(keys))
        print(f"  Aggregating {n_time} daily timesteps to {n_months} months...")
        for name, da in fields.items():
            if kinds[name] == FLUX:
                monthly[name] = aggregate_flux_sum(da, axis.dates)
            else:
                monthly[name] = aggregate_mean(da, axis.dates)
        dates = monthly[reference].indexes["time"]
    else:
        print("  Data already monthly")
        dates = axis.dates
        for name, da in fields.items():
            da = da.assign_coords(time=dates)
            if kinds[name] == FLUX:
                da = convert_precip_units(da, days=MONTHLY_FLUX_DAYS)
            monthly[name] = da

    for name, da in monthly.items():
        if kinds[name] == TEMPERATURE:
            monthly[name] = convert_temp_units(da)

    print(f"  Monthly dates range: {dates[0]:%Y-%m-%d} to {dates[-1]:%Y-%m-%d}")
    return MonthlyFields(
        fields=monthly,
        dates=pd.DatetimeIndex(dates),
        origin=axis.origin,
        sub_monthly=sub_monthly,
    )
