"""
Shared fixtures for channel sync tests.

Every test gets a fresh in-memory SQLite database (StaticPool so the same
connection is reused across threads, e.g. by TestClient), plus seed rows
for one bootstrapped hotel with a room type and an active channel.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from datetime import datetime
from unittest.mock import MagicMock

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from channelsync.database import Base
from channelsync import models  # noqa: F401 - register tables


BASE_URL = "https://api.beds24.com/v2"


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def hotel(db):
    from channelsync.models import Hotel

    hotel = Hotel(name="Harbour View", code="HV")
    db.add(hotel)
    db.commit()
    return hotel


@pytest.fixture
def room_type(db, hotel):
    from channelsync.models import RoomType

    room_type = RoomType(hotel_id=hotel.id, name="Deluxe", code="DLX", capacity=2, base_price=120)
    db.add(room_type)
    db.commit()
    return room_type


@pytest.fixture
def checkpoint(db, hotel):
    """A hotel that finished bootstrap and is mapped to external property P1"""
    from channelsync.models import SyncCheckpoint

    checkpoint = SyncCheckpoint(
        hotel_id=hotel.id,
        bootstrap_completed=True,
        bootstrap_completed_at=datetime(2025, 1, 1),
        sync_enabled=True,
        settings={"property_id": "P1"},
    )
    db.add(checkpoint)
    db.commit()
    return checkpoint


@pytest.fixture
def channel(db, hotel):
    from channelsync.models import ChannelConnection

    channel = ChannelConnection(
        hotel_id=hotel.id,
        channel_name="Booking.com",
        connection_status="active",
        receive_reservations=True,
    )
    db.add(channel)
    db.commit()
    return channel


@pytest.fixture
def token_manager():
    """Stands in for TokenManager; every call gets the same bearer token"""
    manager = MagicMock()
    manager.get_token.return_value = "tok"
    manager.is_valid.return_value = True
    return manager


def mock_http(handler) -> httpx.Client:
    """httpx client whose every request is answered by handler(request)"""
    return httpx.Client(transport=httpx.MockTransport(handler), base_url=BASE_URL)


def beds24_response(data, status_code: int = 200, remaining: int = 900, cost: int = 1, **extra_headers) -> httpx.Response:
    headers = {
        "X-FiveMinCreditLimit-Remaining": str(remaining),
        "X-FiveMinCreditLimit-ResetsIn": "300",
        "X-RequestCost": str(cost),
    }
    headers.update(extra_headers)
    return httpx.Response(status_code, json=data, headers=headers)


def make_client_factory(db, handler, token_manager, tracker=None):
    """client_factory(trace_id) producing Beds24Clients backed by handler"""
    from channelsync.services.beds24_client import Beds24Client, CreditTracker

    def factory(trace_id):
        return Beds24Client(
            db,
            token_manager=token_manager,
            tracker=tracker if tracker is not None else CreditTracker(),
            trace_id=trace_id,
            http_client=mock_http(handler),
        )
    return factory
