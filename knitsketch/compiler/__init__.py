from .compiler import CASTOFF_STITCH, CASTON_STITCH, Compiler, compile_trace

__all__ = ["CASTOFF_STITCH", "CASTON_STITCH", "Compiler", "compile_trace"]
