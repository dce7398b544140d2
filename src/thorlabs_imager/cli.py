from __future__ import annotations

import argparse
import logging
import os
import sys

from .demo import DemoConfig, run_demo
from .diode import (
    DEFAULT_CURRENT_SETPOINT_A,
    DEFAULT_DIODE_SERIAL,
    DEFAULT_TL4000_DLL,
    DeviceIdentity,
    SimulatedLaserDiode,
    TL4000LaserDiode,
    find_instruments,
    resource_name_for_serial,
    set_diode_state,
    state_label,
)
from .imager import DEFAULT_IMAGER_DLL, DEFAULT_PROBE_INI, ImagerError, NotConnectedError, SimulatedImager, ThorlabsImagerDll
from .interfaces import STAGE_AXES

DIODE_PROG = "diode-ctrl"


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


def build_demo_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the OCT scan / photobleach / stage demo sequence")
    parser.add_argument(
        "--dll",
        default=os.environ.get("THORLABS_IMAGER_DLL", DEFAULT_IMAGER_DLL),
        help="Path or name of ThorlabsImager.dll (env THORLABS_IMAGER_DLL)",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Run against the in-memory simulated imager instead of the DLL",
    )
    parser.add_argument("--probe-ini", default=DEFAULT_PROBE_INI, help="SpectralRadar probe ini file")
    parser.add_argument(
        "--output-dir",
        default="scan",
        help="Volume output folder; must not exist yet",
    )
    parser.add_argument("--dz-um", type=float, default=1000.0, help="Stage excursion in µm")
    parser.add_argument("--axis", choices=list(STAGE_AXES), default="z", help="Stage axis to move")
    parser.add_argument("--skip-scan", action="store_true", help="Skip scanner init / volume / photobleach")
    parser.add_argument("--skip-stage", action="store_true", help="Skip stage move")
    parser.add_argument("--verbose", action="store_true", help="Log every native call")
    return parser


def _build_imager(args):
    if args.simulate:
        return SimulatedImager()
    try:
        return ThorlabsImagerDll(args.dll)
    except (OSError, ImagerError) as exc:
        raise RuntimeError(
            f"Failed to load imager DLL {args.dll!r}: {exc}. "
            "Pass --dll with the full path, or use --simulate to run without hardware."
        ) from exc


def demo_main(argv: list[str] | None = None) -> int:
    args = build_demo_parser().parse_args(argv)
    _configure_logging(args.verbose)

    config = DemoConfig(
        probe_ini=args.probe_ini,
        stage_axis=args.axis,
        stage_move_um=args.dz_um,
        run_scanner=not args.skip_scan,
        run_stage=not args.skip_stage,
    )
    config.volume.output_dir = args.output_dir

    try:
        imager = _build_imager(args)
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        with imager:
            run_demo(imager, config)
    except (OSError, ValueError, NotConnectedError, ImagerError) as exc:
        # OSError covers FileExistsError and access violations reported by ctypes.
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


def build_diode_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=DIODE_PROG, description="Turn the laser diode driver on or off")
    parser.add_argument("state", nargs="?", default=None, help="on | off")
    parser.add_argument(
        "--serial",
        default=os.environ.get("TL4000_SERIAL", DEFAULT_DIODE_SERIAL),
        help="Driver S/N as shown at boot (env TL4000_SERIAL)",
    )
    parser.add_argument("--resource", default=None, help="Full VISA resource string; overrides --serial")
    parser.add_argument(
        "--current",
        type=float,
        default=DEFAULT_CURRENT_SETPOINT_A,
        help="LD current setpoint in A, applied when turning on",
    )
    parser.add_argument(
        "--dll",
        default=os.environ.get("TL4000_DLL", DEFAULT_TL4000_DLL),
        help="Path or name of the TL4000 driver DLL (env TL4000_DLL)",
    )
    parser.add_argument("--list", action="store_true", help="List connected TL4000-series instruments and exit")
    parser.add_argument("--simulate", action="store_true", help="Use an in-memory simulated driver")
    parser.add_argument("--verbose", action="store_true", help="Log every driver call")
    return parser


def print_diode_usage() -> None:
    print("How to run:")
    print(f"{DIODE_PROG} on - to turn diode on")
    print(f"{DIODE_PROG} off - to turn diode off")


def print_device_identity(identity: DeviceIdentity) -> None:
    print(f"Instrument:    {identity.name}")
    print(f"Serial number: {identity.serial_number}")
    print(f"Firmware:      {identity.firmware_revision}")
    print(f"Calibration:   {identity.calibration_message}")
    print(f"Driver:        {identity.driver_revision}")


def parse_on_off(value: str) -> bool | None:
    return {"on": True, "off": False}.get(value.strip().lower())


def _build_diode(args):
    if args.simulate:
        return SimulatedLaserDiode()
    resource = args.resource or resource_name_for_serial(args.serial)
    try:
        return TL4000LaserDiode(resource, dll_path=args.dll)
    except OSError as exc:
        raise RuntimeError(
            f"Failed to load TL4000 driver {args.dll!r}: {exc}. "
            "Install the Thorlabs TL4000 instrument driver or pass --dll."
        ) from exc


def diode_main(argv: list[str] | None = None) -> int:
    args = build_diode_parser().parse_args(argv)
    _configure_logging(args.verbose)

    if args.list:
        try:
            resources = find_instruments()
        except (OSError, ValueError) as exc:
            print(f"Error: VISA resource lookup failed: {exc}", file=sys.stderr)
            return 1
        if not resources:
            print("No matching instruments found")
        for index, resource in enumerate(resources, start=1):
            print(f"{index:2d}: {resource}")
        return 0

    if args.state is None:
        print_diode_usage()
        return 0

    on = parse_on_off(args.state)
    if on is None:
        print(f"Unknown input, please run {DIODE_PROG} for input list")
        return 1

    try:
        diode = _build_diode(args)
        with diode:
            if args.verbose:
                print_device_identity(diode.identification())
            result = set_diode_state(diode, on, current_setpoint_a=args.current)
    except (RuntimeError, OSError, ValueError) as exc:
        # TL4000Error and NotConnectedError are RuntimeErrors.
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if result.skipped_keylock:
        print("Keylock engaged, skipping switching LD.")
        return 0

    if result.mismatch:
        print(
            "Tried to change laser diode state to: " + state_label(result.requested_on)
            + ", However, current state is: " + state_label(bool(result.actual_on))
            + ". is the keylock engaged? You might want to disengage that."
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(demo_main())
