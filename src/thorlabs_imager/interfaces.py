from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


STAGE_AXES = ("x", "y", "z")


def normalize_axis(axis: str) -> str:
    """Return the lower-case axis letter, or raise for anything but x/y/z."""

    name = str(axis).strip().lower()
    if name not in STAGE_AXES:
        raise ValueError(f"axis must be one of {STAGE_AXES}, got {axis!r}")
    return name


@dataclass(slots=True)
class VolumeScan:
    """Parameters of a single 3D OCT volume acquisition.

    Positions and ranges are in mm, rotation in degrees. ``size_x`` is the
    number of A-scans along the fast axis, ``size_y`` the number of B-scans.
    """

    output_dir: str | Path
    x_center_mm: float = 0.0
    y_center_mm: float = 0.0
    range_x_mm: float = 1.0
    range_y_mm: float = 1.0
    rotation_deg: float = 0.0
    size_x: int = 100
    size_y: int = 3
    n_bscan_avg: int = 1

    def __post_init__(self) -> None:
        if self.size_x < 1 or self.size_y < 1:
            raise ValueError("size_x and size_y must be >= 1")
        if self.n_bscan_avg < 1:
            raise ValueError("n_bscan_avg must be >= 1 (use 1 for no averaging)")
        if self.range_x_mm < 0 or self.range_y_mm < 0:
            raise ValueError("scan ranges must be >= 0")


@dataclass(slots=True)
class PhotobleachLine:
    """Galvo line to photobleach, endpoints in mm."""

    x_start_mm: float
    y_start_mm: float
    x_end_mm: float
    y_end_mm: float
    duration_s: float
    # Passes of the beam over the line; slower is better, 1 is recommended.
    repetition: float = 1.0

    def __post_init__(self) -> None:
        if self.duration_s <= 0:
            raise ValueError("duration_s must be > 0")
        if self.repetition <= 0:
            raise ValueError("repetition must be > 0")


class OCTScannerInterface(Protocol):
    """Interface for the OCT scan head (scanner, galvos, camera)."""

    def scanner_init(self, probe_ini: str | Path) -> None:
        """Open the OCT device with the given probe configuration."""

    def scanner_close(self) -> None:
        """Close probe and device handles."""

    def scan_3d_volume(self, scan: VolumeScan) -> None:
        """Acquire a raw-spectra volume into ``scan.output_dir``."""

    def scan_3d_volume_processed(self, scan: VolumeScan, dispersion_a: float) -> None:
        """Acquire a volume with dispersion compensation enabled."""

    def photobleach_line(self, line: PhotobleachLine) -> None:
        """Sweep the beam along a line for ``line.duration_s`` seconds."""


class StageInterface(Protocol):
    """Interface for the motorized stage driven through the imager DLL."""

    def stage_init(self, axis: str) -> float:
        """Initialize an axis and return its position in mm."""

    def stage_set_position(self, axis: str, position_mm: float) -> None:
        """Move an axis to an absolute position in mm."""

    def stage_close(self, axis: str) -> None:
        """Release an axis."""


class LaserDiodeInterface(Protocol):
    """Interface for a laser diode / TEC controller."""

    def set_ld_current_setpoint(self, amps: float) -> None:
        """Set the laser diode current setpoint in A."""

    def switch_tec_output(self, on: bool) -> None:
        """Switch the TEC output."""

    def switch_ld_output(self, on: bool) -> None:
        """Switch the laser diode output."""

    def ld_output_state(self) -> bool:
        """Read back whether the laser diode output is on."""

    def is_keylock_tripped(self) -> bool:
        """Whether the keylock protection blocks the LD output."""
