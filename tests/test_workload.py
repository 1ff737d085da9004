import os

import pytest

from isimip_spei.workload import (
    DEFAULT_MODELS,
    DEFAULT_SCENARIOS,
    Model,
    WorkloadTable,
    format_array_spec,
)


def test_default_campaign_size():
    table = WorkloadTable()
    assert table.size == len(DEFAULT_MODELS) * len(DEFAULT_SCENARIOS) == 15


def test_task_id_mapping_is_a_bijection():
    table = WorkloadTable()
    seen = set()
    for task_id in range(table.size):
        m, s = table.indices(task_id)
        assert table.task_id(m, s) == task_id
        seen.add((m, s))
    assert len(seen) == table.size


def test_known_assignment():
    unit = WorkloadTable().unit(4)
    assert unit.model.name == "ukesm1-0-ll"
    assert unit.scenario == "ssp370"
    assert unit.label == "ukesm1-0-ll_ssp370"


@pytest.mark.parametrize("task_id", [-1, 15, 100])
def test_out_of_range_task_id(task_id):
    with pytest.raises(ValueError):
        WorkloadTable().unit(task_id)


def test_table_validation():
    with pytest.raises(ValueError):
        WorkloadTable(models=[], scenarios=["ssp126"])
    with pytest.raises(ValueError):
        WorkloadTable(models=[Model("a", "A"), Model("a", "A")], scenarios=["ssp126"])
    with pytest.raises(ValueError):
        WorkloadTable(models=[Model("a", "A")], scenarios=["ssp126", "ssp126"])


def test_output_layout():
    table = WorkloadTable()
    unit = table.unit(0)
    assert table.spei_path("/out", unit) == os.path.join(
        "/out", "gfdl-esm4_ssp126", "spei_gfdl-esm4_ssp126.nc"
    )
    assert table.pet_path("/out", unit, "penman") == os.path.join(
        "/out", "gfdl-esm4_ssp126", "pet_penman_gfdl-esm4_ssp126.nc"
    )


def test_missing_set_is_exact_complement():
    table = WorkloadTable()
    done = {table.spei_path("/out", table.unit(t)) for t in (0, 4, 14)}

    missing = table.missing_task_ids("/out", exists=done.__contains__)

    assert missing == [t for t in range(15) if t not in (0, 4, 14)]
    assert missing == sorted(missing)


def test_missing_set_on_disk(tmp_path):
    table = WorkloadTable(models=[Model("m1", "M1"), Model("m2", "M2")], scenarios=["s1", "s2"])
    path = table.spei_path(str(tmp_path), table.unit(2))
    os.makedirs(os.path.dirname(path))
    open(path, "w").close()

    assert table.missing_task_ids(str(tmp_path)) == [0, 1, 3]
    assert table.is_complete(table.unit(2), str(tmp_path))


def test_format_array_spec():
    assert format_array_spec([0, 4, 7]) == "0,4,7"
    assert format_array_spec([]) == ""
