"""Shared helpers: reading variable series, unit conversion and NetCDF output."""

import os
from datetime import date
from typing import List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import xarray as xr

from .exceptions import SourceReadError

# Sentinel written in place of every non-finite output value
MISSING_VALUE = -999.0

SECONDS_PER_DAY = 86400.0

# Kelvin heuristic: a temperature field whose mean exceeds this is in K
KELVIN_THRESHOLD = 100.0
KELVIN_OFFSET = 273.15

SPATIAL_AXES = ("lat", "lon")
AXES = ("time",) + SPATIAL_AXES


def split_file_list(file_list: str) -> List[str]:
    """Split a comma-joined, ordered list of paths (empty entries are dropped)."""
    return [p.strip() for p in file_list.split(",") if p.strip()]


def load_variable(
    paths: Union[str, Sequence[str]],
    variable: Optional[str] = None,
) -> xr.DataArray:
    """
    Load one physical variable from one or more NetCDF files.

    Parameters
    ----------
    paths : str or sequence of str
        Ordered file paths, or a comma-joined string of them. Files are
        concatenated along time in the given order.
    variable : str, optional
        Variable name to extract. If None, uses the first data variable
        of the first file.

    Returns
    -------
    xr.DataArray
        Data with dims (time, lat, lon). Time is left undecoded; its raw
        'units' attribute is kept on the time coordinate.

    Raises
    ------
    SourceReadError
        A file is missing or unreadable, lacks the variable or an axis,
        or its spatial axes / time units disagree with the first file.
    """
    if isinstance(paths, str):
        paths = split_file_list(paths)
    paths = list(paths)
    if not paths:
        raise SourceReadError("No input files given")

    pieces = []
    for path in paths:
        da = _read_one(path, variable)
        if variable is None:
            variable = da.name
        pieces.append(da)

    first = pieces[0]
    time_units = first.time.attrs.get("units")
    for path, da in zip(paths[1:], pieces[1:]):
        for axis in SPATIAL_AXES:
            if not np.array_equal(da[axis].values, first[axis].values):
                raise SourceReadError(
                    f"{axis} axis of {path} does not match {paths[0]}"
                )
        if da.time.attrs.get("units") != time_units:
            raise SourceReadError(
                f"Time units of {path} ('{da.time.attrs.get('units')}') "
                f"differ from {paths[0]} ('{time_units}')"
            )

    if len(pieces) == 1:
        data = first
    else:
        data = xr.concat(pieces, dim="time", coords="minimal", compat="override")
        data.time.attrs = dict(first.time.attrs)

    time = data.time.values.astype(np.float64)
    if time.size > 1 and not np.all(np.diff(time) > 0):
        raise SourceReadError(
            f"Time axis of '{variable}' is not strictly increasing across "
            f"{len(paths)} file(s); check the file order"
        )

    data.attrs["source_files"] = len(paths)
    return data


def _read_one(path: str, variable: Optional[str]) -> xr.DataArray:
    if not os.path.isfile(path):
        raise SourceReadError(f"Input file not found: {path}")

    try:
        with xr.open_dataset(path, decode_times=False) as ds:
            name = variable if variable is not None else _first_data_variable(ds)
            if name is None or name not in ds.data_vars:
                raise SourceReadError(
                    f"Variable '{name}' not found in {path} "
                    f"(available: {', '.join(map(str, ds.data_vars))})"
                )
            da = ds[name].load()
    except SourceReadError:
        raise
    except (OSError, ValueError, RuntimeError, KeyError) as e:
        raise SourceReadError(f"Cannot read {path}: {e}") from e

    for axis in AXES:
        if axis not in da.dims or axis not in da.coords:
            raise SourceReadError(f"Variable '{name}' in {path} has no '{axis}' axis")

    if da.sizes["time"] == 0:
        raise SourceReadError(f"Variable '{name}' in {path} has no time steps")

    # Drop singleton extras such as a height level on near-surface fields
    for dim in [d for d in da.dims if d not in AXES]:
        if da.sizes[dim] != 1:
            raise SourceReadError(
                f"Variable '{name}' in {path} has unexpected dimension '{dim}'"
            )
        da = da.isel({dim: 0}, drop=True)

    return da.transpose(*AXES)


def _first_data_variable(ds: xr.Dataset) -> Optional[str]:
    """First data variable with a time axis, ignoring bounds variables."""
    candidates = [
        v for v in ds.data_vars
        if "time" in ds[v].dims and not str(v).endswith(("_bnds", "_bounds"))
    ]
    if candidates:
        return candidates[0]
    names = list(ds.data_vars)
    return names[0] if names else None


def convert_precip_units(pr: xr.DataArray, days: float = 1.0) -> xr.DataArray:
    """
    Convert precipitation flux from kg/m²/s to mm.

    Parameters
    ----------
    pr : xr.DataArray
        Precipitation in kg/m²/s (= mm/s)
    days : float
        Number of days the flux is accumulated over (1 -> mm/day)

    Returns
    -------
    xr.DataArray
        Precipitation depth in mm per `days`
    """
    pr_mm = pr * SECONDS_PER_DAY * days
    pr_mm.attrs = dict(pr.attrs)
    pr_mm.attrs["units"] = "mm/day" if days == 1.0 else "mm/month"
    return pr_mm


def convert_temp_units(temp: xr.DataArray) -> xr.DataArray:
    """
    Convert temperature from Kelvin to Celsius if needed.

    A field whose mean (ignoring missing values) exceeds 100 is taken to be
    in Kelvin. Celsius input is returned unchanged, so applying this twice
    is harmless.

    Parameters
    ----------
    temp : xr.DataArray
        Temperature (K or °C)

    Returns
    -------
    xr.DataArray
        Temperature in °C
    """
    values = temp.values
    if np.isfinite(values).any() and np.nanmean(values) > KELVIN_THRESHOLD:
        attrs = dict(temp.attrs)
        temp = temp - KELVIN_OFFSET
        temp.attrs = attrs
        temp.attrs["units"] = "degC"
    return temp


def rolling_sum(values: np.ndarray, window: int) -> np.ndarray:
    """
    Trailing rolling sum of a 1D series.

    The first window-1 entries, and any window containing a missing
    value, are NaN.
    """
    values = np.asarray(values, dtype=np.float64)
    if window == 1:
        return values.copy()
    out = np.full(values.shape, np.nan)
    if values.size < window:
        return out
    csum = np.concatenate([[0.0], np.cumsum(np.where(np.isnan(values), 0.0, values))])
    nans = np.concatenate([[0], np.cumsum(np.isnan(values))])
    sums = csum[window:] - csum[:-window]
    has_nan = (nans[window:] - nans[:-window]) > 0
    out[window - 1:] = np.where(has_nan, np.nan, sums)
    return out


def get_calibration_mask(
    time: pd.DatetimeIndex,
    calibration_period: Tuple[int, int],
) -> np.ndarray:
    """
    Create boolean mask for calibration period.

    Parameters
    ----------
    time : pd.DatetimeIndex
        Monthly dates
    calibration_period : tuple of int
        (start_year, end_year) inclusive

    Returns
    -------
    np.ndarray
        Boolean mask (True for calibration period)
    """
    years = np.asarray(time.year)
    return (years >= calibration_period[0]) & (years <= calibration_period[1])


def days_since(dates: pd.DatetimeIndex, origin: date) -> np.ndarray:
    """Offsets of `dates` from `origin` in (fractional) days."""
    delta = np.asarray(dates.values).astype("datetime64[s]") - np.datetime64(origin, "s")
    return delta / np.timedelta64(1, "D")


def save_gridded(
    fields: Mapping[str, xr.DataArray],
    output_path: str,
    origin: date,
    attrs: Optional[Mapping[str, str]] = None,
    complevel: int = 4,
) -> None:
    """
    Write named gridded fields sharing (time, lat, lon) axes to one NetCDF file.

    Every non-finite value (NaN, ±inf) is replaced by MISSING_VALUE, which
    is also declared as each variable's _FillValue and missing_value.
    Time is written as 'days since <origin>'. The file is written under a
    temporary name and renamed into place, so an interrupted run never
    leaves a partial output behind.

    Parameters
    ----------
    fields : mapping of str to xr.DataArray
        Output variables, in file order
    output_path : str
        Output file path
    origin : datetime.date
        Time origin the time axis is expressed against
    attrs : mapping, optional
        Global attributes (title, calibration_period, pet_method, ...)
    complevel : int
        zlib compression level (1-9)
    """
    if not fields:
        raise ValueError("No fields to write")

    first = next(iter(fields.values()))
    coords = {
        "time": days_since(first.indexes["time"], origin),
        "lat": first["lat"].values,
        "lon": first["lon"].values,
    }

    ds = xr.Dataset(coords=coords)
    encoding = {}
    for name, da in fields.items():
        da = da.transpose(*AXES)
        if da.shape != tuple(len(coords[a]) for a in AXES):
            raise ValueError(f"Field '{name}' shape {da.shape} does not match the output grid")
        values = da.values.astype(np.float64)
        clean = np.where(np.isfinite(values), values, MISSING_VALUE)
        var_attrs = {
            k: v for k, v in da.attrs.items()
            if k not in ("_FillValue", "missing_value")
        }
        ds[name] = xr.DataArray(clean, dims=AXES, attrs=var_attrs)
        encoding[name] = {
            "zlib": True,
            "complevel": complevel,
            "dtype": "float32",
            "_FillValue": MISSING_VALUE,
            "missing_value": MISSING_VALUE,
        }

    ds["lon"].attrs = {"units": "degrees_east", "long_name": "longitude", "axis": "X"}
    ds["lat"].attrs = {"units": "degrees_north", "long_name": "latitude", "axis": "Y"}
    ds["time"].attrs = {
        "units": f"days since {origin.isoformat()}",
        "calendar": "standard",
        "long_name": "time",
        "axis": "T",
    }
    encoding["lon"] = {"_FillValue": None}
    encoding["lat"] = {"_FillValue": None}
    encoding["time"] = {"dtype": "float64", "_FillValue": None}
    ds.attrs = dict(attrs or {})

    out_dir = os.path.dirname(os.path.abspath(output_path))
    os.makedirs(out_dir, exist_ok=True)
    tmp_path = output_path + ".part"
    try:
        ds.to_netcdf(tmp_path, encoding=encoding)
        os.replace(tmp_path, output_path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def format_size(n_bytes: int) -> str:
    """Human-readable file size, e.g. '12M'."""
    if n_bytes < 1024:
        return f"{n_bytes}B"
    size = float(n_bytes)
    for unit in ("K", "M", "G"):
        size /= 1024
        if size < 1024:
            return f"{size:.1f}{unit}"
    return f"{size / 1024:.1f}T"
