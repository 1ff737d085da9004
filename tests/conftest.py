"""Synthetic ISIMIP-like inputs for the test suite."""

from datetime import date

import numpy as np
import pandas as pd
import pytest
import xarray as xr

LAT = np.array([35.0, 40.0])
LON = np.array([-100.0, -99.0, -98.0])
UNITS = "days since 1979-01-01"


def month_offsets(start_month, n_months, origin=date(1979, 1, 1)):
    """Day offsets of the first day of `n_months` months, counted from Jan 1979."""
    dates = pd.date_range("1979-01-01", periods=start_month + n_months, freq="MS")
    dates = dates[start_month:]
    return np.array([(d.date() - origin).days for d in dates], dtype=np.float64)


def raw_field(name, values, offsets, units=UNITS, lat=LAT, lon=LON):
    """DataArray as load_variable returns it: undecoded time with a units attribute."""
    time_attrs = {"units": units} if units is not None else {}
    time = xr.DataArray(np.asarray(offsets, dtype=np.float64), dims="time", attrs=time_attrs)
    return xr.DataArray(
        np.asarray(values, dtype=np.float64),
        dims=("time", "lat", "lon"),
        coords={"time": time, "lat": lat, "lon": lon},
        name=name,
    )


def write_field(path, name, values, offsets, units=UNITS, lat=LAT, lon=LON):
    da = raw_field(name, values, offsets, units=units, lat=lat, lon=lon)
    da.to_dataset().to_netcdf(path)
    return str(path)


def seasonal_climate(start_month, n_months, lat=LAT, lon=LON):
    """
    Monthly pr (kg/m²/s), tasmin and tasmax (K) with a clean annual cycle.

    Month index k counts from Jan 1979, so consecutive chunks join up.
    Precipitation is scaled per cell so that no two cells are identical.
    """
    k = np.arange(start_month, start_month + n_months, dtype=np.float64)
    shape = (n_months, len(lat), len(lon))
    cell_factor = 1 + 0.1 * np.arange(len(lat) * len(lon)).reshape(len(lat), len(lon))

    pr = (3 + 2 * np.sin(2 * np.pi * k / 12))[:, None, None] * 1e-5 * cell_factor
    tasmin = np.broadcast_to((278 + 10 * np.sin(2 * np.pi * (k - 3) / 12))[:, None, None], shape)
    tasmax = tasmin + np.broadcast_to((9 + 2 * np.cos(2 * np.pi * k / 12))[:, None, None], shape)
    return {"pr": pr, "tasmin": tasmin.copy(), "tasmax": tasmax.copy()}


@pytest.fixture
def make_field():
    return raw_field


@pytest.fixture
def write_nc():
    return write_field


@pytest.fixture
def climate():
    return seasonal_climate


@pytest.fixture
def offsets():
    return month_offsets


@pytest.fixture
def monthly_files(tmp_path):
    """36 months (1979-1981) of monthly pr/tasmin/tasmax, one file per variable."""
    data = seasonal_climate(0, 36)
    off = month_offsets(0, 36)
    return {
        name: write_field(tmp_path / f"{name}_1979_1981.nc", name, values, off)
        for name, values in data.items()
    }
