"""
Configuration parsing for SPEI runs.

Option strings coming from the command line (or the batch environment)
are parsed once here into typed values; the engine never compares raw
strings inside its loops.
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from .exceptions import ConfigurationError
from .pet import PetMethod

DEFAULT_SCALES = "2,3,6"
DEFAULT_CALIBRATION = "1979-2014"
DEFAULT_PET_METHOD = "hargreaves"


def parse_calibration_period(cal_str: str) -> Tuple[int, int]:
    """
    Parse calibration period string.

    Parameters
    ----------
    cal_str : str
        Calibration period as 'YYYY-YYYY' (both years inclusive)

    Returns
    -------
    tuple of int
        (start_year, end_year)
    """
    parts = cal_str.strip().split("-")
    if len(parts) != 2:
        raise ConfigurationError(
            f"Invalid calibration period format: {cal_str}. Use 'YYYY-YYYY'"
        )
    try:
        start, end = int(parts[0]), int(parts[1])
    except ValueError:
        raise ConfigurationError(
            f"Invalid calibration period format: {cal_str}. Use 'YYYY-YYYY'"
        )
    if start > end:
        raise ConfigurationError(
            f"Calibration start year {start} is after end year {end}"
        )
    return start, end


def parse_scales(scales_str: str) -> Tuple[int, ...]:
    """
    Parse comma-separated accumulation scales, e.g. '2,3,6'.

    Order is kept; duplicates and non-positive values are rejected.
    """
    scales = []
    for part in scales_str.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            scale = int(part)
        except ValueError:
            raise ConfigurationError(f"Invalid accumulation scale: '{part}'")
        if scale < 1:
            raise ConfigurationError(f"Accumulation scale must be positive: {scale}")
        if scale in scales:
            raise ConfigurationError(f"Duplicate accumulation scale: {scale}")
        scales.append(scale)

    if not scales:
        raise ConfigurationError(f"No accumulation scales given in '{scales_str}'")
    return tuple(scales)


def parse_pet_method(method: str) -> PetMethod:
    try:
        return PetMethod.from_string(method)
    except ValueError as e:
        raise ConfigurationError(str(e))


@dataclass(frozen=True)
class EngineSettings:
    """Settings shared by every workload unit of a campaign."""

    pet_method: PetMethod
    scales: Tuple[int, ...]
    calibration_period: Tuple[int, int]
    per_calendar_month: bool = False

    @classmethod
    def from_strings(
        cls,
        pet_method: str = DEFAULT_PET_METHOD,
        scales: str = DEFAULT_SCALES,
        calibration: str = DEFAULT_CALIBRATION,
        per_calendar_month: bool = False,
    ) -> "EngineSettings":
        return cls(
            pet_method=parse_pet_method(pet_method),
            scales=parse_scales(scales),
            calibration_period=parse_calibration_period(calibration),
            per_calendar_month=per_calendar_month,
        )

    @property
    def calibration_label(self) -> str:
        return f"{self.calibration_period[0]}-{self.calibration_period[1]}"


def derive_wb_path(pet_path: Optional[str]) -> Optional[str]:
    """Water-balance output path next to the PET output ('pet_' -> 'wb_')."""
    if not pet_path:
        return None
    head, name = os.path.split(pet_path)
    if "pet_" in name:
        name = name.replace("pet_", "wb_", 1)
    else:
        name = "wb_" + name
    return os.path.join(head, name)
