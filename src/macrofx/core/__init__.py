"""macrofx core: metadata, port contracts, errors and ambient services.

Nothing in this package performs I/O or imports a transport.

- errors: MacrofxError hierarchy with stable codes
- logging: structlog configuration
- settings: pydantic-settings process configuration
- meta: Meta mapping, policy models, MetaBuilder, Step
- ports: port protocols, Lease, Releasable
- validation: step/meta validation with suggestions
- result: Ok/Err
"""
