"""
macrofx - metadata-driven capability injection and scoped resource leasing.

A step declares what it needs in one metadata mapping; an Engine resolves
macros into ports and lease openers, weaves retry/timeout/circuit/logging
policies around them, and runs the step through a fixed six-phase cycle.

- macrofx.core: metadata, ports, errors, logging, settings, validation
- macrofx.execution: bracket, weaver, macros, context, executor, composition
- macrofx.resources: resource pool and temp-dir opener
- macrofx.std: standard environment, macros and engine
- macrofx.testing: fakes for ports
"""

__version__ = "0.1.0"

from macrofx.core.errors import (
    AcquireTimeoutError,
    CircuitOpenError,
    EffectTimeoutError,
    InvalidPolicyError,
    InvalidStepError,
    LeaseScopeError,
    MacrofxError,
    StepValidationError,
    UndeclaredCapabilityError,
)
from macrofx.core.meta import Meta, MetaBuilder, Step, define_step, merge_meta, meta
from macrofx.core.ports import Lease, Releasable, brand_lease
from macrofx.core.result import Err, Ok, Result
from macrofx.execution.bracket import bracket
from macrofx.execution.circuit_breaker import CircuitBreakerRegistry, CircuitState
from macrofx.execution.composition import (
    all_steps,
    branch,
    conditional,
    pipe,
    race,
    retry_step,
    timeout_step,
    with_result,
)
from macrofx.execution.context import ExecutionContext, get_engine, get_spans
from macrofx.execution.executor import Engine, execute
from macrofx.execution.macros import Macro, MacroControl
from macrofx.execution.weave import WeaveOptions, weave

__all__ = [
    "__version__",
    # errors
    "MacrofxError",
    "InvalidStepError",
    "StepValidationError",
    "InvalidPolicyError",
    "UndeclaredCapabilityError",
    "EffectTimeoutError",
    "AcquireTimeoutError",
    "CircuitOpenError",
    "LeaseScopeError",
    # metadata
    "Meta",
    "MetaBuilder",
    "meta",
    "merge_meta",
    "Step",
    "define_step",
    # leases
    "Lease",
    "Releasable",
    "brand_lease",
    "bracket",
    # result
    "Ok",
    "Err",
    "Result",
    # execution
    "Macro",
    "MacroControl",
    "Engine",
    "execute",
    "ExecutionContext",
    "get_engine",
    "get_spans",
    "WeaveOptions",
    "weave",
    "CircuitBreakerRegistry",
    "CircuitState",
    # composition
    "pipe",
    "all_steps",
    "race",
    "branch",
    "conditional",
    "retry_step",
    "timeout_step",
    "with_result",
]
