"""
Per-cell failure isolation.

Every per-cell computation (PET formula, index fit) runs through
`run_cell`, which turns an exception into a failed `CellResult` instead of
letting it escape the grid loop. `CellStatistics` counts the outcomes of
one grid pass and keeps the first failure message for the run report.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, NamedTuple, Optional

import numpy as np
import xarray as xr

# Cells between two progress lines in the grid loops
PROGRESS_EVERY = 5000

# Below this share of finite values a field is reported as low yield
LOW_YIELD_FRACTION = 0.10


class CellResult(NamedTuple):
    """Outcome of one cell: either `values` or an `error` message."""

    values: Optional[np.ndarray]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_cell(func: Callable[..., np.ndarray], *args: Any, **kwargs: Any) -> CellResult:
    """Call `func` for one cell, converting any exception into a failed result."""
    try:
        return CellResult(np.asarray(func(*args, **kwargs), dtype=np.float64))
    except Exception as e:
        return CellResult(None, f"{type(e).__name__}: {e}")


@dataclass
class CellStatistics:
    """Attempt/success counters for one grid pass."""

    attempted: int = 0
    succeeded: int = 0
    first_error: Optional[str] = None
    n_valid: int = 0
    n_total: int = 0

    def record(self, result: CellResult) -> None:
        self.attempted += 1
        if result.ok:
            self.succeeded += 1
        elif self.first_error is None:
            self.first_error = result.error

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    @property
    def success_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        return self.succeeded / self.attempted

    @property
    def valid_fraction(self) -> float:
        if self.n_total == 0:
            return 0.0
        return self.n_valid / self.n_total

    @property
    def low_yield(self) -> bool:
        return self.valid_fraction < LOW_YIELD_FRACTION

    def count_valid(self, values: np.ndarray) -> None:
        """Record how many entries of the finished field are finite."""
        self.n_valid = int(np.isfinite(values).sum())
        self.n_total = int(values.size)

    def report(self, label: str) -> None:
        print(
            f"  {label} success rate: {100 * self.success_rate:.1f}% "
            f"({self.succeeded}/{self.attempted} cells)"
        )
        if self.first_error is not None:
            print(f"  {label} example error: {self.first_error}")
        print(f"  {label} computed: {100 * self.valid_fraction:.1f}% valid values")


def grid_to_cells(da: xr.DataArray) -> np.ndarray:
    """(time, lat, lon) field -> (n_times, n_cells) array, cell j = (j // n_lon, j % n_lon)."""
    values = da.transpose("time", "lat", "lon").values
    return values.reshape(values.shape[0], -1).astype(np.float64)


def cell_latitudes(da: xr.DataArray) -> np.ndarray:
    """Latitude of every cell, in grid_to_cells order."""
    return np.repeat(da["lat"].values, da.sizes["lon"])


def cells_to_grid(values: np.ndarray, like: xr.DataArray, attrs: Optional[dict] = None) -> xr.DataArray:
    """Inverse of grid_to_cells, taking axes from `like`."""
    like = like.transpose("time", "lat", "lon")
    return xr.DataArray(
        values.reshape(like.shape),
        dims=("time", "lat", "lon"),
        coords={"time": like["time"], "lat": like["lat"], "lon": like["lon"]},
        attrs=attrs or {},
    )


class Progress:
    """Prints a progress line every `every` cells of a grid loop."""

    def __init__(self, n_cells: int, every: int = PROGRESS_EVERY):
        self.n_cells = n_cells
        self.every = every
        self._start = time.time()

    def step(self, j: int) -> None:
        if (j + 1) % self.every != 0:
            return
        elapsed = time.time() - self._start
        rate = (j + 1) / elapsed if elapsed > 0 else float("inf")
        remaining = (self.n_cells - j - 1) / rate
        print(
            f"    {j+1:,}/{self.n_cells:,} ({100*(j+1)/self.n_cells:.0f}%)"
            f" - {remaining:.0f}s remaining",
            flush=True,
        )

    def done(self) -> None:
        print(f"    Done in {time.time() - self._start:.1f}s", flush=True)
