"""Book club lifecycle & poll synchronization engine.

Layers: ``config`` (environment accessors), ``db`` (models, engine and
repositories), ``services`` (poll lifecycles, watchers, vote events and
outbound collaborators), ``routes`` (Flask blueprints) and ``startup``
(application wiring).
"""

__all__ = [
]
