"""Standard environment, macros and engine factory."""

from macrofx.std.engine import create_std_engine, run_with_std_engine
from macrofx.std.env import StdEnv
from macrofx.std.macros import STD_MACROS, idempotency_macro, std_macros

__all__ = [
    "StdEnv",
    "STD_MACROS",
    "std_macros",
    "idempotency_macro",
    "create_std_engine",
    "run_with_std_engine",
]
