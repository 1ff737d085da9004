import os

import numpy as np
import pytest
import xarray as xr
from click.testing import CliRunner

from isimip_spei.cli import main
from isimip_spei.workload import WorkloadTable


@pytest.fixture
def runner():
    return CliRunner()


def test_spei_command(tmp_path, runner, monthly_files):
    out_spei = str(tmp_path / "out" / "spei.nc")
    out_pet = str(tmp_path / "out" / "pet_hargreaves.nc")

    result = runner.invoke(main, [
        "spei",
        "--precip", monthly_files["pr"],
        "--tasmin", monthly_files["tasmin"],
        "--tasmax", monthly_files["tasmax"],
        "--scales", "2,3",
        "--calibration", "1979-1981",
        "--out-pet", out_pet,
        "--out-spei", out_spei,
    ])

    assert result.exit_code == 0, result.output
    assert os.path.isfile(out_pet)
    assert os.path.isfile(str(tmp_path / "out" / "wb_hargreaves.nc"))
    with xr.open_dataset(out_spei) as ds:
        assert set(ds.data_vars) == {"spei_02", "spei_03"}
        assert ds["spei_02"].shape == (36, 2, 3)
        assert np.isfinite(ds["spei_02"].values[1:]).all()


def test_spei_command_missing_file(tmp_path, runner, monthly_files):
    result = runner.invoke(main, [
        "spei",
        "--precip", str(tmp_path / "missing.nc"),
        "--tasmin", monthly_files["tasmin"],
        "--tasmax", monthly_files["tasmax"],
        "--out-spei", str(tmp_path / "spei.nc"),
    ])
    assert result.exit_code == 1
    assert "missing.nc" in result.output
    assert not os.path.exists(tmp_path / "spei.nc")


def test_spei_command_penman_needs_inputs(tmp_path, runner, monthly_files):
    result = runner.invoke(main, [
        "spei",
        "--precip", monthly_files["pr"],
        "--tasmin", monthly_files["tasmin"],
        "--tasmax", monthly_files["tasmax"],
        "--pet-method", "penman",
        "--out-spei", str(tmp_path / "spei.nc"),
    ])
    assert result.exit_code == 2
    assert "--sfcwind, --rsds, --hurs" in result.output


@pytest.mark.parametrize("option, value", [("--scales", "3,3"), ("--calibration", "2014-1979")])
def test_spei_command_bad_settings(tmp_path, runner, monthly_files, option, value):
    result = runner.invoke(main, [
        "spei",
        "--precip", monthly_files["pr"],
        "--tasmin", monthly_files["tasmin"],
        "--tasmax", monthly_files["tasmax"],
        option, value,
        "--out-spei", str(tmp_path / "spei.nc"),
    ])
    assert result.exit_code == 2


def test_run_rejects_unknown_task(tmp_path, runner):
    result = runner.invoke(main, ["run", "--task-id", "15", "--data-base", str(tmp_path)])
    assert result.exit_code == 2


def test_run_reads_environment(tmp_path, runner):
    out = tmp_path / "out"
    unit = WorkloadTable().unit(7)
    path = WorkloadTable().spei_path(str(out), unit)
    os.makedirs(os.path.dirname(path))
    open(path, "w").close()

    result = runner.invoke(main, ["run"], env={
        "SLURM_ARRAY_TASK_ID": "7",
        "SPEI_DATA_BASE": str(tmp_path / "data"),
        "SPEI_OUTPUT_BASE": str(out),
    })

    assert result.exit_code == 0, result.output
    assert "OUTPUT ALREADY EXISTS" in result.output
    assert unit.model.directory in result.output


def test_run_missing_data(tmp_path, runner):
    result = runner.invoke(main, [
        "run", "--task-id", "0",
        "--data-base", str(tmp_path / "data"),
        "--output-base", str(tmp_path / "out"),
    ])
    assert result.exit_code == 1
    assert "directory not found" in result.output


def test_check_and_missing(tmp_path, runner):
    table = WorkloadTable()
    path = table.spei_path(str(tmp_path), table.unit(3))
    os.makedirs(os.path.dirname(path))
    with open(path, "wb") as f:
        f.write(b"x" * 1536)

    result = runner.invoke(main, ["check", "--output-base", str(tmp_path)])
    assert result.exit_code == 0
    assert "Progress: 1/15 complete (6%)" in result.output
    assert "1.5K" in result.output

    result = runner.invoke(main, ["missing", "--output-base", str(tmp_path)])
    assert result.exit_code == 0
    expected = ",".join(str(t) for t in range(15) if t != 3)
    assert expected in result.output


def test_validate(tmp_path, runner):
    table = WorkloadTable()
    good = table.spei_path(str(tmp_path), table.unit(0))
    bad = table.spei_path(str(tmp_path), table.unit(1))
    for path in (good, bad):
        os.makedirs(os.path.dirname(path))
    xr.Dataset({"spei_03": (("time",), np.zeros(3))}).to_netcdf(good)
    with open(bad, "w") as f:
        f.write("broken")

    result = runner.invoke(main, ["validate", "--output-base", str(tmp_path)])

    assert result.exit_code == 1
    assert "[OK] Task 0" in result.output
    assert "[ERROR] Task 1" in result.output
    assert "Missing: 13" in result.output
