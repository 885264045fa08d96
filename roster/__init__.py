"""Membership reconciliation and activity quota engine.

Modules:
    - clients: External group-membership source client
    - services: Reconciler, aggregator, quota evaluator, period reset,
      permission cache, notification sink, scheduler
    - routes: Thin FastAPI request layer
"""

__version__ = "0.1.0"
