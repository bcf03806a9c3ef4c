"""Shared fixtures: in-memory store, role gate and one actor per role."""

import os
import sys
from pathlib import Path

import pytest

# Backend modules are top-level imports
sys.path.insert(0, str(Path(__file__).parent.parent))
os.environ.setdefault('STORE_BACKEND', 'memory')

from funding_engine import FundingServices, InMemoryDocumentStore, RecordKind, WithdrawalPolicy
from permissions import RolePermissionGate

YEAR = 2024
MONTH = 6


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def gate():
    return RolePermissionGate()


@pytest.fixture
def services(store, gate):
    return FundingServices(store, gate)


@pytest.fixture
def admin():
    return {"user_id": "admin-1", "role": "ADMIN"}


@pytest.fixture
def reporter():
    return {"user_id": "reporter-1", "role": "REPORTER"}


@pytest.fixture
def other_reporter():
    return {"user_id": "reporter-2", "role": "REPORTER"}


@pytest.fixture
def finance():
    return {"user_id": "finance-1", "role": "FINANCE"}


@pytest.fixture
def auditor():
    return {"user_id": "auditor-1", "role": "AUDITOR"}


@pytest.fixture
def observer():
    return {"user_id": "observer-1", "role": "OBSERVER"}


@pytest.fixture
def submitted_record(services):
    """Factory: create a record of `kind` and move it to SUBMITTED."""
    async def _make(kind, key, amount, actor, year=YEAR, month=MONTH):
        record = await services.records.create_record(kind, key, year, month, actor, amount=amount)
        return await services.records.submit(kind, record["_id"], actor)
    return _make


@pytest.fixture
def reconciled_pair(submitted_record, reporter, finance):
    """Factory: submitted ActualUser and ActualFinance records for one key."""
    async def _make(key, user_amount, finance_amount):
        user = None
        if user_amount is not None:
            user = await submitted_record(RecordKind.ACTUAL_USER, key, user_amount, reporter)
        fin = await submitted_record(RecordKind.ACTUAL_FINANCE, key, finance_amount, finance)
        return user, fin
    return _make


@pytest.fixture
def submitted_only_policy():
    def _make(module_type, **overrides):
        fields = {"allowed_statuses": ["SUBMITTED"], "time_limit": 0, "max_attempts": 0,
                  "require_approval": True}
        fields.update(overrides)
        return WithdrawalPolicy(module_type=module_type, **fields)
    return _make
