import os

import numpy as np
import pytest
import xarray as xr

from isimip_spei.batch import (
    TaskStatus,
    build_file_list,
    collect_inputs,
    input_dirs,
    output_report,
    run_task,
    validate_output,
)
from isimip_spei.config import EngineSettings
from isimip_spei.exceptions import ConfigurationError, SourceReadError
from isimip_spei.workload import Model, WorkloadTable

SETTINGS = EngineSettings.from_strings("hargreaves", "3", "1979-1981")


@pytest.fixture
def table():
    return WorkloadTable(models=[Model("gfdl-esm4", "GFDL-ESM4")], scenarios=["ssp126", "ssp585"])


@pytest.fixture
def data_base(tmp_path, climate, offsets, write_nc):
    """Monthly historical 1979-1981 and ssp126 1982-1983 inputs for GFDL-ESM4."""
    base = tmp_path / "data"
    chunks = [("historical", 0, 36, "1979_1981"), ("ssp126", 36, 24, "1982_1983")]
    for experiment, start, n, years in chunks:
        folder = base / experiment / "GFDL-ESM4_conus"
        folder.mkdir(parents=True)
        data = climate(start, n)
        for name, values in data.items():
            fname = f"gfdl-esm4_r1i1p1f1_w5e5_{experiment}_{name}_conus_monthly_{years}.nc"
            write_nc(folder / fname, name, values, offsets(start, n))
    # snowfall must never be read as precipitation
    (base / "historical" / "GFDL-ESM4_conus" / "gfdl-esm4_prsn_conus_1979_1981.nc").write_bytes(b"")
    return str(base)


def test_build_file_list_orders_historical_first(data_base, table):
    dirs = input_dirs(data_base, table.unit(0))
    files = build_file_list(dirs, "pr")
    assert [os.path.basename(f).split("_")[3] for f in files] == ["historical", "ssp126"]
    assert not any("prsn" in f for f in files)


def test_build_file_list_nothing_found(data_base, table):
    with pytest.raises(SourceReadError):
        build_file_list(input_dirs(data_base, table.unit(0)), "hurs")


def test_collect_inputs_missing_directory(data_base, table):
    with pytest.raises(ConfigurationError, match="Future directory"):
        collect_inputs(data_base, table.unit(1), SETTINGS)


def test_collect_inputs_penman_requires_extras(data_base, table):
    penman = EngineSettings.from_strings("penman", "3", "1979-1981")
    with pytest.raises(SourceReadError, match="sfcwind"):
        collect_inputs(data_base, table.unit(0), penman)


def test_run_task_end_to_end(tmp_path, data_base, table):
    out = str(tmp_path / "out")

    status = run_task(0, data_base, out, SETTINGS, table=table)

    assert status is TaskStatus.COMPLETED
    unit = table.unit(0)
    spei_path = table.spei_path(out, unit)
    pet_path = table.pet_path(out, unit, "hargreaves")
    wb_path = os.path.join(os.path.dirname(pet_path), "wb_hargreaves_gfdl-esm4_ssp126.nc")
    for path in (spei_path, pet_path, wb_path):
        assert os.path.isfile(path)

    with xr.open_dataset(spei_path) as ds:
        spei = ds["spei_03"].values
        assert spei.shape == (60, 2, 3)
        assert np.isnan(spei[:2]).all()
        assert np.isfinite(spei[2:]).all()
        assert ds.attrs["calibration_period"] == "1979-1981"
        assert ds.attrs["pet_method"] == "hargreaves"

    assert validate_output(spei_path) is None
    assert table.missing_task_ids(out) == [1]


def test_run_task_skips_existing_output(tmp_path, table):
    out = str(tmp_path / "out")
    spei_path = table.spei_path(out, table.unit(1))
    os.makedirs(os.path.dirname(spei_path))
    with open(spei_path, "wb") as f:
        f.write(b"x" * 2048)

    # no input data exists: a skipped task never looks for it
    status = run_task(1, str(tmp_path / "no-data"), out, SETTINGS, table=table)

    assert status is TaskStatus.SKIPPED
    assert os.path.getsize(spei_path) == 2048


def test_output_report(tmp_path, table):
    out = str(tmp_path)
    spei_path = table.spei_path(out, table.unit(1))
    os.makedirs(os.path.dirname(spei_path))
    with open(spei_path, "wb") as f:
        f.write(b"x" * 10)

    report = output_report(table, out)

    assert [s.exists for s in report] == [False, True]
    assert report[1].size == 10


def test_validate_output_problems(tmp_path):
    garbage = tmp_path / "garbage.nc"
    garbage.write_bytes(b"not a netcdf file")
    assert validate_output(str(garbage)).startswith("Invalid NetCDF file")

    other = tmp_path / "other.nc"
    xr.Dataset({"pet": (("time",), np.zeros(3))}).to_netcdf(other)
    assert validate_output(str(other)) == "No SPEI variables found"
