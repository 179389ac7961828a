from .needle import BACK, BACK_SLIDER, FRONT, FRONT_SLIDER, LEFT, NONE, RIGHT, Needle
from .packed import PackedArray, PackedArrayError
from .simulation import SimulationResult, simulate
from .store import OPCODES, OPERATIONS, Knitout, KnitoutError, KnitoutStream

__all__ = [
    "BACK",
    "BACK_SLIDER",
    "FRONT",
    "FRONT_SLIDER",
    "LEFT",
    "NONE",
    "RIGHT",
    "Needle",
    "PackedArray",
    "PackedArrayError",
    "OPCODES",
    "OPERATIONS",
    "Knitout",
    "KnitoutError",
    "KnitoutStream",
    "SimulationResult",
    "simulate",
]
