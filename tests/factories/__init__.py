"""Test data factories for the roster engine.

This module provides factory helpers for generating test data: ORM rows
seeded into the test database and a scriptable membership source.
"""

from tests.factories.membership_factory import FakeMembershipSource
from tests.factories.workspace_factory import WorkspaceFactory

__all__ = [
    "FakeMembershipSource",
    "WorkspaceFactory",
]
