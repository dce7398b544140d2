import logging
import sys
import types

import pytest

from thorlabs_imager.diode import (
    TL4000_FIND_PATTERN_ANY,
    SimulatedLaserDiode,
    TL4000Error,
    TL4000LaserDiode,
    ViBoolean,
    find_instruments,
    resource_name_for_serial,
    set_diode_state,
)
from thorlabs_imager.imager import NotConnectedError

RESOURCE = "USB0::0x1313::0x804F::M00511660::0::INSTR"


class _Fn:
    def __init__(self, impl) -> None:
        self._impl = impl
        self.argtypes = None
        self.restype = None

    def __call__(self, *args):
        return self._impl(*args)


class _FakeTL4000:
    """Fake driver DLL; out-parameters are ctypes objects written through ``.value``."""

    def __init__(self) -> None:
        self.calls: list = []
        self.ld_on = False
        self.tec_on = False
        self.keylock = False
        self.status_overrides: dict = {}

        def record(name, result=None):
            def impl(*args):
                self.calls.append((name, args))
                if result is not None:
                    result(*args)
                return self.status_overrides.get(name, 0)

            return _Fn(impl)

        def init(_rsc, _idq, _reset, handle):
            handle.value = 7

        def switch_ld(_h, on):
            self.ld_on = bool(on)

        def switch_tec(_h, on):
            self.tec_on = bool(on)

        def ld_state(_h, out):
            out.value = int(self.ld_on)

        def tec_state(_h, out):
            out.value = int(self.tec_on)

        def keylock(_h, out):
            out.value = int(self.keylock)

        def ident(_h, manuf, name, serial, fw):
            manuf.value = b"Thorlabs"
            name.value = b"CLD1015"
            serial.value = b"M00511660"
            fw.value = b"1.4.0"

        def calibration(_h, msg):
            msg.value = b"3-Jan-2020"

        def revision(_h, drv, _fw):
            drv.value = b"3.1.0"

        def error_message(_h, _status, buf):
            buf.value = b"Parameter out of range"

        self.TL4000_init = record("TL4000_init", init)
        self.TL4000_close = record("TL4000_close")
        self.TL4000_setLdCurrSetpoint = record("TL4000_setLdCurrSetpoint")
        self.TL4000_switchTecOutput = record("TL4000_switchTecOutput", switch_tec)
        self.TL4000_getTecOutputState = record("TL4000_getTecOutputState", tec_state)
        self.TL4000_switchLdOutput = record("TL4000_switchLdOutput", switch_ld)
        self.TL4000_getLdOutputState = record("TL4000_getLdOutputState", ld_state)
        self.TL4000_isTrippedLdOutputProtKeylock = record("TL4000_isTrippedLdOutputProtKeylock", keylock)
        self.TL4000_identificationQuery = record("TL4000_identificationQuery", ident)
        self.TL4000_calibrationMessage = record("TL4000_calibrationMessage", calibration)
        self.TL4000_revisionQuery = record("TL4000_revisionQuery", revision)
        self.TL4000_errorMessage = _Fn(lambda *args: (error_message(*args), 0)[1])


def test_resource_name_for_serial() -> None:
    assert resource_name_for_serial("M00511660") == RESOURCE
    with pytest.raises(ValueError):
        resource_name_for_serial("  ")


def test_open_close_lifecycle() -> None:
    lib = _FakeTL4000()
    diode = TL4000LaserDiode(RESOURCE, library=lib)

    with diode:
        assert diode.is_open
        diode.switch_tec_output(True)

    assert not diode.is_open
    name, args = lib.calls[0]
    assert name == "TL4000_init"
    assert args[:3] == (RESOURCE.encode(), 1, 0)
    assert lib.calls[1] == ("TL4000_switchTecOutput", (7, 1))
    assert lib.calls[-1] == ("TL4000_close", (7,))
    assert lib.TL4000_getLdOutputState.restype is not None


def test_calls_require_open_session() -> None:
    diode = TL4000LaserDiode(RESOURCE, library=_FakeTL4000())
    with pytest.raises(NotConnectedError):
        diode.switch_ld_output(True)


def test_negative_status_raises_with_driver_message() -> None:
    lib = _FakeTL4000()
    lib.status_overrides["TL4000_setLdCurrSetpoint"] = -1074001659
    diode = TL4000LaserDiode(RESOURCE, library=lib)
    diode.open()

    with pytest.raises(TL4000Error, match="Parameter out of range") as excinfo:
        diode.set_ld_current_setpoint(5.0)
    assert excinfo.value.status == -1074001659


def test_bool_queries_read_out_parameters() -> None:
    lib = _FakeTL4000()
    lib.keylock = True
    with TL4000LaserDiode(RESOURCE, library=lib) as diode:
        diode.switch_ld_output(True)
        assert diode.ld_output_state() is True
        assert diode.tec_output_state() is False
        assert diode.is_keylock_tripped() is True

    _, args = lib.calls[-2]
    assert isinstance(args[1], ViBoolean)


def test_identification() -> None:
    with TL4000LaserDiode(RESOURCE, library=_FakeTL4000()) as diode:
        identity = diode.identification()

    assert identity.name == "CLD1015"
    assert identity.serial_number == "M00511660"
    assert identity.firmware_revision == "1.4.0"
    assert identity.calibration_message == "3-Jan-2020"
    assert identity.driver_revision == "3.1.0"


def test_find_instruments_uses_pyvisa(monkeypatch) -> None:
    seen = {}

    class _FakeResourceManager:
        def list_resources(self, query):
            seen["query"] = query
            return (RESOURCE,)

        def close(self):
            seen["closed"] = True

    monkeypatch.setitem(sys.modules, "pyvisa", types.SimpleNamespace(ResourceManager=_FakeResourceManager))

    assert find_instruments() == [RESOURCE]
    assert seen == {"query": TL4000_FIND_PATTERN_ANY, "closed": True}


def test_set_diode_state_on_sets_current_before_outputs() -> None:
    diode = SimulatedLaserDiode()

    result = set_diode_state(diode, True, current_setpoint_a=0.14)

    assert diode.calls == [
        ("setLdCurrSetpoint", 0.14),
        ("switchTecOutput", True),
        ("switchLdOutput", True),
    ]
    assert result.actual_on is True
    assert not result.mismatch


def test_set_diode_state_off_leaves_current_alone() -> None:
    diode = SimulatedLaserDiode()
    diode.ld_on = diode.tec_on = True

    result = set_diode_state(diode, False)

    assert ("setLdCurrSetpoint", 0.14) not in diode.calls
    assert diode.tec_on is False
    assert result.actual_on is False


def test_set_diode_state_skips_ld_when_keylocked() -> None:
    diode = SimulatedLaserDiode(keylock_tripped=True)

    result = set_diode_state(diode, True)

    assert result.skipped_keylock
    assert diode.tec_on is True
    assert ("switchLdOutput", True) not in diode.calls


def test_set_diode_state_reports_mismatch() -> None:
    result = set_diode_state(SimulatedLaserDiode(ld_stuck_off=True), True)

    assert result.mismatch
    assert result.actual_on is False


def test_set_diode_state_against_driver_binding() -> None:
    lib = _FakeTL4000()
    with TL4000LaserDiode(RESOURCE, library=lib) as diode:
        result = set_diode_state(diode, True, current_setpoint_a=0.14)

    names = [name for name, _ in lib.calls]
    assert names.index("TL4000_setLdCurrSetpoint") < names.index("TL4000_switchTecOutput")
    assert names.index("TL4000_isTrippedLdOutputProtKeylock") < names.index("TL4000_switchLdOutput")
    assert result.actual_on is True


def test_failed_init_closes_returned_session() -> None:
    lib = _FakeTL4000()
    lib.status_overrides["TL4000_init"] = -1073807343
    seen_handles = []
    error_message = lib.TL4000_errorMessage

    def _error_message(handle, status, buf):
        seen_handles.append(handle)
        return error_message(handle, status, buf)

    lib.TL4000_errorMessage = _Fn(_error_message)
    diode = TL4000LaserDiode(RESOURCE, library=lib)

    with pytest.raises(TL4000Error, match="TL4000_init") as excinfo:
        diode.open()

    assert excinfo.value.status == -1073807343
    assert seen_handles == [7]
    assert [name for name, _ in lib.calls] == ["TL4000_init", "TL4000_close"]
    assert lib.calls[-1] == ("TL4000_close", (7,))
    assert not diode.is_open


def test_failed_init_without_session_skips_close() -> None:
    lib = _FakeTL4000()
    lib.TL4000_init = _Fn(lambda *args: (lib.calls.append(("TL4000_init", args)), -1073807343)[1])

    with pytest.raises(TL4000Error):
        TL4000LaserDiode(RESOURCE, library=lib).open()

    assert [name for name, _ in lib.calls] == ["TL4000_init"]


def test_positive_status_is_logged_not_raised(caplog) -> None:
    lib = _FakeTL4000()
    lib.status_overrides["TL4000_switchTecOutput"] = 0x3FFF0085
    diode = TL4000LaserDiode(RESOURCE, library=lib)
    diode.open()

    with caplog.at_level(logging.WARNING, logger="thorlabs_imager.diode"):
        diode.switch_tec_output(True)

    assert lib.tec_on is True
    assert "TL4000_switchTecOutput returned status" in caplog.text
