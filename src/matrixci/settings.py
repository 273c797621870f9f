from __future__ import annotations
import os


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


WORKERS = _int("MATRIXCI_WORKERS", max(1, (os.cpu_count() or 2) - 1))
STEP_TIMEOUT = _float("MATRIXCI_STEP_TIMEOUT", 3600.0)
WORKSPACE = os.environ.get("MATRIXCI_WORKSPACE", ".")
OUTPUT_TAIL = _int("MATRIXCI_OUTPUT_TAIL", 4000)
