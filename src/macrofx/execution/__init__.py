"""macrofx execution: turning a Step into a result.

WHY
───
Capability resolution, policy weaving, lifecycle hooks and resource release
must behave the same for every step. This package is the only place that
logic lives.

ARCHITECTURE
────────────
::

    Engine.run(step, base)          executor.py
      ├── resolve_capabilities      macros.py
      ├── weave                     weave.py
      │     ├── CircuitBreaker      circuit_breaker.py
      │     ├── RetryContext        retry.py
      │     └── race_timeout        timeout.py
      ├── ExecutionContext          context.py
      └── hooks / run

    bracket(acquire, use)           bracket.py
    pipe / all_steps / race / ...   composition.py
"""
