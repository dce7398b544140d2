"""ctypes bindings for the Thorlabs OCT imager DLL and TL4000 laser diode driver."""

from .demo import DemoConfig, run_demo, run_scanner_demo, run_stage_demo
from .diode import (
    DeviceIdentity,
    DiodeSwitchResult,
    SimulatedLaserDiode,
    TL4000Error,
    TL4000LaserDiode,
    find_instruments,
    resource_name_for_serial,
    set_diode_state,
)
from .imager import ImagerError, NotConnectedError, SimulatedImager, ThorlabsImagerDll
from .interfaces import (
    LaserDiodeInterface,
    OCTScannerInterface,
    PhotobleachLine,
    StageInterface,
    VolumeScan,
)
from .units import mm_to_um, um_to_mm

__all__ = [
    "DemoConfig",
    "run_demo",
    "run_scanner_demo",
    "run_stage_demo",
    "DeviceIdentity",
    "DiodeSwitchResult",
    "SimulatedLaserDiode",
    "TL4000Error",
    "TL4000LaserDiode",
    "find_instruments",
    "resource_name_for_serial",
    "set_diode_state",
    "ImagerError",
    "NotConnectedError",
    "SimulatedImager",
    "ThorlabsImagerDll",
    "LaserDiodeInterface",
    "OCTScannerInterface",
    "PhotobleachLine",
    "StageInterface",
    "VolumeScan",
    "mm_to_um",
    "um_to_mm",
]
