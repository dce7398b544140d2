"""Thorlabs TL4000-series laser diode driver (ITC4000 / LDC4000 / CLD1000).

Binds the vendor VISA instrument driver (``TL4000_64.dll``) through ctypes and
uses pyvisa only to enumerate connected instruments.
"""

from __future__ import annotations

import ctypes
import logging
import os
import struct
from dataclasses import dataclass
from typing import Any

from .imager import NotConnectedError, encode_c_string, load_library
from .interfaces import LaserDiodeInterface

logger = logging.getLogger(__name__)

DEFAULT_TL4000_DLL = "TL4000_64.dll" if struct.calcsize("P") == 8 else "TL4000_32.dll"
DEFAULT_DIODE_SERIAL = "M00511660"
DEFAULT_CURRENT_SETPOINT_A = 0.140

THORLABS_VENDOR_ID = 0x1313
CLD1000_MODEL_CODE = 0x804F

TL4000_FIND_PATTERN_ANY = (
    "USB?*INSTR{VI_ATTR_MANF_ID==0x1313 && (VI_ATTR_MODEL_CODE==0x8040 || VI_ATTR_MODEL_CODE==0x8041"
    " || VI_ATTR_MODEL_CODE==0x8042 || VI_ATTR_MODEL_CODE==0x8048 || VI_ATTR_MODEL_CODE==0x8049"
    " || VI_ATTR_MODEL_CODE==0x804A || VI_ATTR_MODEL_CODE==0x8047 || VI_ATTR_MODEL_CODE==0x804F"
    " || VI_ATTR_MODEL_CODE==0x8046 || VI_ATTR_MODEL_CODE==0x804E)}"
)

TL4000_BUFFER_SIZE = 256
TL4000_ERR_DESCR_BUFFER_SIZE = 512

VI_SUCCESS = 0
VI_NULL = 0

ViStatus = ctypes.c_int32
ViSession = ctypes.c_uint32
ViBoolean = ctypes.c_uint16
ViReal64 = ctypes.c_double
ViChar_p = ctypes.c_char_p

_PROTOTYPES: list[tuple[str, list[Any]]] = [
    ("TL4000_init", [ViChar_p, ViBoolean, ViBoolean, ctypes.POINTER(ViSession)]),
    ("TL4000_close", [ViSession]),
    ("TL4000_setLdCurrSetpoint", [ViSession, ViReal64]),
    ("TL4000_switchTecOutput", [ViSession, ViBoolean]),
    ("TL4000_getTecOutputState", [ViSession, ctypes.POINTER(ViBoolean)]),
    ("TL4000_switchLdOutput", [ViSession, ViBoolean]),
    ("TL4000_getLdOutputState", [ViSession, ctypes.POINTER(ViBoolean)]),
    ("TL4000_isTrippedLdOutputProtKeylock", [ViSession, ctypes.POINTER(ViBoolean)]),
    ("TL4000_identificationQuery", [ViSession, ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p]),
    ("TL4000_calibrationMessage", [ViSession, ctypes.c_char_p]),
    ("TL4000_revisionQuery", [ViSession, ctypes.c_char_p, ctypes.c_char_p]),
    ("TL4000_errorMessage", [ViSession, ViStatus, ctypes.c_char_p]),
]


class TL4000Error(RuntimeError):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"TL4000 error {status}: {message}")
        self.status = status


def resource_name_for_serial(serial_number: str, model_code: int = CLD1000_MODEL_CODE) -> str:
    """VISA resource string of a USB-connected driver with the given S/N.

    The S/N is the one shown on the driver display at boot.
    """

    serial = serial_number.strip()
    if not serial:
        raise ValueError("serial_number must not be empty")
    return f"USB0::0x{THORLABS_VENDOR_ID:04X}::0x{model_code:04X}::{serial}::0::INSTR"


def find_instruments(pattern: str = TL4000_FIND_PATTERN_ANY) -> list[str]:
    """List VISA resources matching ``pattern``; empty when nothing is connected."""

    import pyvisa

    rm = pyvisa.ResourceManager()
    try:
        return list(rm.list_resources(pattern))
    finally:
        rm.close()


def state_label(on: bool) -> str:
    return "On" if on else "Off"


def _decode(buffer: Any) -> str:
    return buffer.value.decode("latin-1").strip()


@dataclass(slots=True)
class DeviceIdentity:
    manufacturer: str
    name: str
    serial_number: str
    firmware_revision: str
    calibration_message: str
    driver_revision: str


class TL4000LaserDiode(LaserDiodeInterface):
    """Session to a single TL4000-series driver.

    ```python
    with TL4000LaserDiode(resource_name_for_serial("M00511660")) as itc:
        itc.switch_tec_output(True)
    ```
    """

    def __init__(
        self,
        resource_name: str,
        dll_path: str | os.PathLike[str] = DEFAULT_TL4000_DLL,
        id_query: bool = True,
        reset_device: bool = False,
        library: Any | None = None,
    ) -> None:
        self._resource_name = resource_name
        self._id_query = id_query
        self._reset_device = reset_device
        self._dll = library if library is not None else load_library(dll_path, stdcall=True)
        self._handle: int | None = None
        for name, argtypes in _PROTOTYPES:
            fn = getattr(self._dll, name)
            fn.argtypes = argtypes
            fn.restype = ViStatus

    @property
    def resource_name(self) -> str:
        return self._resource_name

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def _error_message(self, status: int, handle: int | None = None) -> str:
        buf = ctypes.create_string_buffer(TL4000_ERR_DESCR_BUFFER_SIZE)
        if handle is None:
            handle = self._handle if self._handle is not None else VI_NULL
        if self._dll.TL4000_errorMessage(handle, status, buf) != VI_SUCCESS:
            return "unknown error"
        return _decode(buf)

    def _check(self, status: int, function: str) -> None:
        status = int(status)
        # Positive values are warnings / completion codes, not failures.
        if status < VI_SUCCESS:
            raise TL4000Error(status, f"{function}: {self._error_message(status)}")
        if status > VI_SUCCESS:
            logger.warning("%s returned status %d", function, status)

    def _session(self) -> int:
        if self._handle is None:
            raise NotConnectedError(f"No open session to {self._resource_name}")
        return self._handle

    def _call(self, function: str, *args: Any) -> None:
        logger.debug("%s%s", function, args)
        self._check(getattr(self._dll, function)(self._session(), *args), function)

    def _query_bool(self, function: str) -> bool:
        value = ViBoolean(0)
        self._call(function, value)
        return bool(value.value)

    def open(self) -> None:
        if self._handle is not None:
            return
        handle = ViSession(VI_NULL)
        logger.debug("TL4000_init(%s)", self._resource_name)
        status = self._dll.TL4000_init(
            encode_c_string(self._resource_name),
            int(self._id_query),
            int(self._reset_device),
            handle,
        )
        status = int(status)
        if status < VI_SUCCESS:
            # The driver may hand back a session even when init fails.
            session = int(handle.value)
            message = self._error_message(status, session)
            if session != VI_NULL:
                self._dll.TL4000_close(session)
            raise TL4000Error(status, f"TL4000_init: {message}")
        self._check(status, "TL4000_init")
        self._handle = int(handle.value)

    def close(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        logger.debug("TL4000_close(%s)", handle)
        self._check(self._dll.TL4000_close(handle), "TL4000_close")

    def __enter__(self) -> "TL4000LaserDiode":
        self.open()
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.close()

    def set_ld_current_setpoint(self, amps: float) -> None:
        if amps < 0:
            raise ValueError("current setpoint must be >= 0 A")
        self._call("TL4000_setLdCurrSetpoint", float(amps))

    def switch_tec_output(self, on: bool) -> None:
        self._call("TL4000_switchTecOutput", int(bool(on)))

    def tec_output_state(self) -> bool:
        return self._query_bool("TL4000_getTecOutputState")

    def switch_ld_output(self, on: bool) -> None:
        self._call("TL4000_switchLdOutput", int(bool(on)))

    def ld_output_state(self) -> bool:
        return self._query_bool("TL4000_getLdOutputState")

    def is_keylock_tripped(self) -> bool:
        return self._query_bool("TL4000_isTrippedLdOutputProtKeylock")

    def identification(self) -> DeviceIdentity:
        manufacturer, name, serial, firmware = (
            ctypes.create_string_buffer(TL4000_BUFFER_SIZE) for _ in range(4)
        )
        self._call("TL4000_identificationQuery", manufacturer, name, serial, firmware)
        calibration = ctypes.create_string_buffer(TL4000_BUFFER_SIZE)
        self._call("TL4000_calibrationMessage", calibration)
        driver_rev = ctypes.create_string_buffer(TL4000_BUFFER_SIZE)
        self._call("TL4000_revisionQuery", driver_rev, None)
        return DeviceIdentity(
            manufacturer=_decode(manufacturer),
            name=_decode(name),
            serial_number=_decode(serial),
            firmware_revision=_decode(firmware),
            calibration_message=_decode(calibration),
            driver_revision=_decode(driver_rev),
        )


class SimulatedLaserDiode(LaserDiodeInterface):
    """In-memory driver. ``ld_stuck_off`` models a driver that ignores LD-on commands."""

    def __init__(self, keylock_tripped: bool = False, ld_stuck_off: bool = False) -> None:
        self.keylock_tripped = keylock_tripped
        self.ld_stuck_off = ld_stuck_off
        self.current_setpoint_a = 0.0
        self.tec_on = False
        self.ld_on = False
        self.calls: list[tuple[Any, ...]] = []

    def open(self) -> None:
        self.calls.append(("open",))

    def close(self) -> None:
        self.calls.append(("close",))

    def __enter__(self) -> "SimulatedLaserDiode":
        self.open()
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.close()

    def set_ld_current_setpoint(self, amps: float) -> None:
        if amps < 0:
            raise ValueError("current setpoint must be >= 0 A")
        self.current_setpoint_a = float(amps)
        self.calls.append(("setLdCurrSetpoint", float(amps)))

    def switch_tec_output(self, on: bool) -> None:
        self.tec_on = bool(on)
        self.calls.append(("switchTecOutput", bool(on)))

    def tec_output_state(self) -> bool:
        return self.tec_on

    def switch_ld_output(self, on: bool) -> None:
        self.calls.append(("switchLdOutput", bool(on)))
        if self.keylock_tripped or (on and self.ld_stuck_off):
            return
        self.ld_on = bool(on)

    def ld_output_state(self) -> bool:
        return self.ld_on

    def is_keylock_tripped(self) -> bool:
        return self.keylock_tripped

    def identification(self) -> DeviceIdentity:
        return DeviceIdentity(
            manufacturer="Thorlabs",
            name="Simulated TL4000",
            serial_number=DEFAULT_DIODE_SERIAL,
            firmware_revision="0.0.0",
            calibration_message="not calibrated",
            driver_revision="simulated",
        )


@dataclass(slots=True)
class DiodeSwitchResult:
    requested_on: bool
    actual_on: bool | None
    skipped_keylock: bool = False

    @property
    def mismatch(self) -> bool:
        return self.actual_on is not None and self.actual_on != self.requested_on


def set_diode_state(
    diode: LaserDiodeInterface,
    on: bool,
    current_setpoint_a: float = DEFAULT_CURRENT_SETPOINT_A,
) -> DiodeSwitchResult:
    """Switch TEC and laser diode outputs together.

    The current setpoint is written before switching on. When the keylock
    protection is tripped the TEC is still switched but the LD is left alone.
    """

    on = bool(on)
    if on:
        diode.set_ld_current_setpoint(current_setpoint_a)

    diode.switch_tec_output(on)

    if diode.is_keylock_tripped():
        logger.info("Keylock engaged, LD output left unchanged")
        return DiodeSwitchResult(requested_on=on, actual_on=None, skipped_keylock=True)

    diode.switch_ld_output(on)
    actual = bool(diode.ld_output_state())
    return DiodeSwitchResult(requested_on=on, actual_on=actual)
