from __future__ import annotations

UM_PER_MM = 1000.0


def um_to_mm(value_um: float) -> float:
    return float(value_um) / UM_PER_MM


def mm_to_um(value_mm: float) -> float:
    return float(value_mm) * UM_PER_MM
