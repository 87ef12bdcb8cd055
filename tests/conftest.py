"""
Shared fixtures for escrow ledger tests.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from tip_escrow.config.loader import EscrowConfig
from tip_escrow.sdk.escrow_service import EscrowService
from tip_escrow.storage.models import TipEvent

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Returns a strictly increasing timestamp on every call."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)):
        self._ticks = itertools.count()
        self.start = start
        self.step = step

    def __call__(self) -> datetime:
        return self.start + self.step * next(self._ticks)


def make_tip(tip_id: str, media_id: str, amount: int, bidder_id: str = "bidder-1") -> TipEvent:
    return TipEvent(tip_id=tip_id, media_id=media_id, bidder_id=bidder_id, amount=amount, timestamp=T0)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "escrow.db")


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture
def make_service(db_path, clock):
    """Build a service on the test database, optionally with a custom policy."""
    def factory(config: EscrowConfig = None) -> EscrowService:
        return EscrowService(db_path=db_path, config=config, clock=clock)
    return factory


@pytest.fixture
def service(make_service):
    return make_service()
