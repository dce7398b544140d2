from __future__ import annotations

import ctypes
import locale
import logging
import os
from pathlib import Path
from typing import Any

from .interfaces import OCTScannerInterface, PhotobleachLine, StageInterface, VolumeScan, normalize_axis

logger = logging.getLogger(__name__)

DEFAULT_IMAGER_DLL = "ThorlabsImager.dll"
DEFAULT_PROBE_INI = r"C:\Program Files\Thorlabs\SpectralRadar\Config\Probe - Olympus 10x.ini"

# (symbol, argtypes, restype). Mirrors the exported C ABI of ThorlabsImager.dll.
_REQUIRED_PROTOTYPES: list[tuple[str, list[Any], Any]] = [
    ("yOCTScannerInit", [ctypes.c_char_p], None),
    ("yOCTScannerClose", [], None),
    (
        "yOCTScan3DVolume",
        [ctypes.c_double] * 5 + [ctypes.c_int] * 3 + [ctypes.c_char_p],
        None,
    ),
    (
        "yOCTScan3DVolumeProcessed",
        [ctypes.c_double] * 5 + [ctypes.c_int] * 3 + [ctypes.c_char_p, ctypes.c_double],
        None,
    ),
    ("yOCTPhotobleachLine", [ctypes.c_double] * 6, None),
    ("yOCTStageInit", [ctypes.c_char], ctypes.c_double),
    ("yOCTStageSetPosition", [ctypes.c_char, ctypes.c_double], None),
    ("yOCTStageClose", [ctypes.c_char], None),
]

# Not exported by every build of the DLL.
_OPTIONAL_PROTOTYPES: list[tuple[str, list[Any], Any]] = [
    ("yOCTTurnLaser", [ctypes.c_bool], None),
    ("yOCTCaptureCameraImage", [ctypes.c_char_p], None),
    ("yOCTSetCameraRingLightIntensity", [ctypes.c_int], None),
]


class NotConnectedError(RuntimeError):
    pass


class ImagerError(RuntimeError):
    pass


def load_library(dll_path: str | os.PathLike[str], *, stdcall: bool = False) -> Any:
    """Load a vendor DLL by file path or by bare name.

    A path with a directory component must exist; a bare name is resolved by
    the platform loader (PATH / system directories).
    """

    path = Path(dll_path)
    if len(path.parts) > 1 and not path.exists():
        raise FileNotFoundError(f"DLL not found: {dll_path}")
    if stdcall and os.name == "nt":
        return ctypes.WinDLL(str(path))
    return ctypes.CDLL(str(path))


def encode_c_string(value: str | os.PathLike[str]) -> bytes:
    # The vendor APIs take narrow ANSI strings.
    return os.fspath(value).encode(locale.getpreferredencoding(False))


def _axis_char(axis: str) -> bytes:
    return normalize_axis(axis).encode("ascii")


def _check_volume_output_dir(output_dir: str | Path) -> Path:
    path = Path(output_dir)
    if path.exists():
        raise FileExistsError(
            f"Output folder already exists, will not scan: {path}. "
            "Choose a new directory for every volume."
        )
    return path


def _check_ring_light_percent(percent: int) -> int:
    value = int(percent)
    if not 0 <= value <= 100:
        raise ValueError("ring light intensity must be within 0..100 percent")
    return value


class ThorlabsImagerDll(OCTScannerInterface, StageInterface):
    """ctypes binding of ``ThorlabsImager.dll``.

    Every method forwards to the matching ``yOCT*`` export. Pass ``library`` to
    use an already-loaded library object (or a fake in tests) instead of
    loading ``dll_path``.
    """

    def __init__(self, dll_path: str | os.PathLike[str] = DEFAULT_IMAGER_DLL, library: Any | None = None) -> None:
        self._dll = library if library is not None else load_library(dll_path)
        self._optional: dict[str, Any] = {}
        self._scanner_open = False
        self._open_axes: set[str] = set()
        self._bind_prototypes()

    def _bind_prototypes(self) -> None:
        for name, argtypes, restype in _REQUIRED_PROTOTYPES:
            try:
                fn = getattr(self._dll, name)
            except AttributeError as exc:
                raise ImagerError(f"Loaded library does not export {name}") from exc
            fn.argtypes = argtypes
            fn.restype = restype

        for name, argtypes, restype in _OPTIONAL_PROTOTYPES:
            fn = getattr(self._dll, name, None)
            if fn is None:
                continue
            fn.argtypes = argtypes
            fn.restype = restype
            self._optional[name] = fn

    def _optional_export(self, name: str) -> Any:
        fn = self._optional.get(name)
        if fn is None:
            raise ImagerError(f"{name} is not exported by this build of {DEFAULT_IMAGER_DLL}")
        return fn

    def _require_scanner(self) -> None:
        if not self._scanner_open:
            raise NotConnectedError("OCT scanner not initialized; call scanner_init first")

    @property
    def scanner_open(self) -> bool:
        return self._scanner_open

    @property
    def open_axes(self) -> frozenset[str]:
        return frozenset(self._open_axes)

    # OCT scanner

    def scanner_init(self, probe_ini: str | os.PathLike[str] = DEFAULT_PROBE_INI) -> None:
        logger.debug("yOCTScannerInit(%s)", probe_ini)
        self._dll.yOCTScannerInit(encode_c_string(probe_ini))
        self._scanner_open = True

    def scanner_close(self) -> None:
        logger.debug("yOCTScannerClose()")
        self._dll.yOCTScannerClose()
        self._scanner_open = False

    def _volume_args(self, scan: VolumeScan) -> tuple[Any, ...]:
        output_dir = _check_volume_output_dir(scan.output_dir)
        return (
            float(scan.x_center_mm),
            float(scan.y_center_mm),
            float(scan.range_x_mm),
            float(scan.range_y_mm),
            float(scan.rotation_deg),
            int(scan.size_x),
            int(scan.size_y),
            int(scan.n_bscan_avg),
            encode_c_string(output_dir),
        )

    def scan_3d_volume(self, scan: VolumeScan) -> None:
        self._require_scanner()
        args = self._volume_args(scan)
        logger.debug("yOCTScan3DVolume%s", args)
        self._dll.yOCTScan3DVolume(*args)

    def scan_3d_volume_processed(self, scan: VolumeScan, dispersion_a: float) -> None:
        self._require_scanner()
        args = self._volume_args(scan) + (float(dispersion_a),)
        logger.debug("yOCTScan3DVolumeProcessed%s", args)
        self._dll.yOCTScan3DVolumeProcessed(*args)

    def photobleach_line(self, line: PhotobleachLine) -> None:
        self._require_scanner()
        args = (
            float(line.x_start_mm),
            float(line.y_start_mm),
            float(line.x_end_mm),
            float(line.y_end_mm),
            float(line.duration_s),
            float(line.repetition),
        )
        logger.debug("yOCTPhotobleachLine%s", args)
        self._dll.yOCTPhotobleachLine(*args)

    def turn_laser(self, on: bool) -> None:
        fn = self._optional_export("yOCTTurnLaser")
        logger.debug("yOCTTurnLaser(%s)", bool(on))
        fn(bool(on))

    def capture_camera_image(self, file_path: str | os.PathLike[str]) -> None:
        self._require_scanner()
        fn = self._optional_export("yOCTCaptureCameraImage")
        logger.debug("yOCTCaptureCameraImage(%s)", file_path)
        fn(encode_c_string(file_path))

    def set_camera_ring_light_intensity(self, percent: int) -> None:
        self._require_scanner()
        value = _check_ring_light_percent(percent)
        fn = self._optional_export("yOCTSetCameraRingLightIntensity")
        logger.debug("yOCTSetCameraRingLightIntensity(%d)", value)
        fn(value)

    # Stage

    def stage_init(self, axis: str = "z") -> float:
        name = normalize_axis(axis)
        logger.debug("yOCTStageInit(%s)", name)
        position = float(self._dll.yOCTStageInit(_axis_char(name)))
        self._open_axes.add(name)
        return position

    def stage_set_position(self, axis: str, position_mm: float) -> None:
        name = normalize_axis(axis)
        if name not in self._open_axes:
            raise NotConnectedError(f"Stage axis {name!r} not initialized; call stage_init first")
        logger.debug("yOCTStageSetPosition(%s, %f)", name, position_mm)
        self._dll.yOCTStageSetPosition(_axis_char(name), float(position_mm))

    def stage_close(self, axis: str = "z") -> None:
        name = normalize_axis(axis)
        logger.debug("yOCTStageClose(%s)", name)
        self._dll.yOCTStageClose(_axis_char(name))
        self._open_axes.discard(name)

    def close(self) -> None:
        for name in sorted(self._open_axes):
            self.stage_close(name)
        if self._scanner_open:
            self.scanner_close()

    def __enter__(self) -> "ThorlabsImagerDll":
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.close()


class SimulatedImager(OCTScannerInterface, StageInterface):
    """In-memory stand-in for the imager DLL, used for dry runs and tests."""

    def __init__(self, initial_positions_mm: dict[str, float] | None = None) -> None:
        self.initial_positions_mm = dict(initial_positions_mm or {})
        self.calls: list[tuple[Any, ...]] = []
        self.positions_mm: dict[str, float] = {}
        self.scanner_open = False
        self.laser_on = False
        self.ring_light_percent = 0

    @property
    def open_axes(self) -> frozenset[str]:
        return frozenset(self.positions_mm)

    def _require_scanner(self) -> None:
        if not self.scanner_open:
            raise NotConnectedError("Simulated scanner not initialized")

    def scanner_init(self, probe_ini: str | os.PathLike[str] = DEFAULT_PROBE_INI) -> None:
        self.calls.append(("yOCTScannerInit", os.fspath(probe_ini)))
        self.scanner_open = True

    def scanner_close(self) -> None:
        self.calls.append(("yOCTScannerClose",))
        self.scanner_open = False

    def scan_3d_volume(self, scan: VolumeScan) -> None:
        self._require_scanner()
        path = _check_volume_output_dir(scan.output_dir)
        path.mkdir(parents=True)
        self.calls.append(("yOCTScan3DVolume", scan))

    def scan_3d_volume_processed(self, scan: VolumeScan, dispersion_a: float) -> None:
        self._require_scanner()
        path = _check_volume_output_dir(scan.output_dir)
        path.mkdir(parents=True)
        self.calls.append(("yOCTScan3DVolumeProcessed", scan, float(dispersion_a)))

    def photobleach_line(self, line: PhotobleachLine) -> None:
        self._require_scanner()
        self.calls.append(("yOCTPhotobleachLine", line))

    def turn_laser(self, on: bool) -> None:
        self.calls.append(("yOCTTurnLaser", bool(on)))
        self.laser_on = bool(on)

    def capture_camera_image(self, file_path: str | os.PathLike[str]) -> None:
        self._require_scanner()
        self.calls.append(("yOCTCaptureCameraImage", os.fspath(file_path)))

    def set_camera_ring_light_intensity(self, percent: int) -> None:
        self._require_scanner()
        self.ring_light_percent = _check_ring_light_percent(percent)
        self.calls.append(("yOCTSetCameraRingLightIntensity", self.ring_light_percent))

    def stage_init(self, axis: str = "z") -> float:
        name = normalize_axis(axis)
        position = float(self.initial_positions_mm.get(name, 0.0))
        self.positions_mm[name] = position
        self.calls.append(("yOCTStageInit", name))
        return position

    def stage_set_position(self, axis: str, position_mm: float) -> None:
        name = normalize_axis(axis)
        if name not in self.positions_mm:
            raise NotConnectedError(f"Simulated stage axis {name!r} not initialized")
        self.positions_mm[name] = float(position_mm)
        self.calls.append(("yOCTStageSetPosition", name, float(position_mm)))

    def stage_close(self, axis: str = "z") -> None:
        name = normalize_axis(axis)
        self.positions_mm.pop(name, None)
        self.calls.append(("yOCTStageClose", name))

    def close(self) -> None:
        for name in sorted(self.positions_mm):
            self.stage_close(name)
        if self.scanner_open:
            self.scanner_close()

    def __enter__(self) -> "SimulatedImager":
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.close()
