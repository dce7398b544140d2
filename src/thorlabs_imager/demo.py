from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Protocol

from .imager import DEFAULT_PROBE_INI
from .interfaces import OCTScannerInterface, PhotobleachLine, StageInterface, VolumeScan, normalize_axis
from .units import um_to_mm


class ImagerLike(OCTScannerInterface, StageInterface, Protocol):
    pass


def _default_volume() -> VolumeScan:
    return VolumeScan(
        output_dir="scan",
        x_center_mm=0.0,
        y_center_mm=0.0,
        range_x_mm=1.0,
        range_y_mm=1.0,
        rotation_deg=0.0,
        size_x=100,
        size_y=3,
        n_bscan_avg=2,
    )


def _default_photobleach() -> PhotobleachLine:
    return PhotobleachLine(
        x_start_mm=-1.0,
        y_start_mm=0.0,
        x_end_mm=1.0,
        y_end_mm=0.0,
        duration_s=2.0,
        repetition=1.0,
    )


@dataclass(slots=True)
class DemoConfig:
    probe_ini: str = DEFAULT_PROBE_INI
    volume: VolumeScan = field(default_factory=_default_volume)
    photobleach: PhotobleachLine = field(default_factory=_default_photobleach)
    stage_axis: str = "z"
    # Stage excursion relative to the position reported at init.
    stage_move_um: float = 1000.0
    run_scanner: bool = True
    run_stage: bool = True

    def __post_init__(self) -> None:
        self.stage_axis = normalize_axis(self.stage_axis)


def run_scanner_demo(imager: OCTScannerInterface, config: DemoConfig, log: Callable[[str], None] = print) -> None:
    """Init scanner, acquire one volume, photobleach one line, close scanner."""

    log("yOCTScannerInit")
    imager.scanner_init(config.probe_ini)
    try:
        log("yOCTScan3DVolume")
        imager.scan_3d_volume(config.volume)

        log("yOCTPhotobleachLine")
        imager.photobleach_line(config.photobleach)
    finally:
        log("yOCTScannerClose")
        imager.scanner_close()


def run_stage_demo(stage: StageInterface, config: DemoConfig, log: Callable[[str], None] = print) -> list[float]:
    """Move the stage away by ``stage_move_um`` and back. Returns commanded positions in mm."""

    axis = config.stage_axis
    log("yOCTStageInit")
    origin_mm = stage.stage_init(axis)
    commanded: list[float] = []
    try:
        target_mm = origin_mm + um_to_mm(config.stage_move_um)
        log("yOCTStageSetPosition")
        stage.stage_set_position(axis, target_mm)
        commanded.append(target_mm)

        # Move back (reset)
        stage.stage_set_position(axis, origin_mm)
        commanded.append(origin_mm)
    finally:
        log("yOCTStageClose")
        stage.stage_close(axis)
    return commanded


def run_demo(imager: ImagerLike, config: DemoConfig | None = None, log: Callable[[str], None] = print) -> None:
    config = config or DemoConfig()
    if config.run_scanner:
        run_scanner_demo(imager, config, log=log)
    if config.run_stage:
        run_stage_demo(imager, config, log=log)
    log("Testing Done")
