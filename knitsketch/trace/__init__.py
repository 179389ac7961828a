from .trace import END, INVERSE, START, TWICE, Trace, TracedStitch, TraceError, TracePass, TraceState
from .tracing import Tracing, trace_stitches

__all__ = [
    "END",
    "INVERSE",
    "START",
    "TWICE",
    "Trace",
    "TracedStitch",
    "TraceError",
    "TracePass",
    "TraceState",
    "Tracing",
    "trace_stitches",
]
