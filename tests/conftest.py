"""
Conftest
"""
import asyncio
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crud import message_crud, profile_crud, ride_crud, ride_request_crud
from app.realtime.broker import ChangeBroker
from app.service.ride_backend import RideBackend
from app.sync.feed import ChangeFeedClient
from app.sync.soft_remove import SoftRemovePolicy
from app.utils.timestamps import utcnow

TEST_DB_URL = "sqlite://"


@pytest.fixture
def engine():
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def broker():
    return ChangeBroker()


@pytest.fixture
def backend(session_factory, broker):
    return RideBackend(session_factory, broker)


@pytest.fixture
async def feed(broker):
    client = ChangeFeedClient(broker, reconnect_attempts=2, backoff_base=0.001, backoff_max=0.01)
    yield client
    client.close()


@pytest.fixture
def policy():
    return SoftRemovePolicy(grace_ms=20)


class World:
    """Seeds rows straight into the database, without publishing change events."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _insert(self, crud, row: Dict[str, Any]) -> str:
        db = self._session_factory()
        try:
            return crud.insert(db, row=row)["id"]
        finally:
            db.close()

    def profile(self, name: str) -> str:
        return self._insert(profile_crud, {"full_name": name, "university_name": "State University"})

    def ride(self, driver_id: str, *, hours_ahead: float = 24, seats: int = 3, status: str = "active") -> str:
        return self._insert(
            ride_crud,
            {
                "driver_id": driver_id,
                "origin_location": "North Campus",
                "destination_university": "State University",
                "departure_time": utcnow() + timedelta(hours=hours_ahead),
                "available_seats": seats,
                "status": status,
            },
        )

    def request(self, ride_id: str, passenger_id: str, status: str = "pending", **flags) -> str:
        return self._insert(
            ride_request_crud,
            {"ride_id": ride_id, "passenger_id": passenger_id, "status": status, **flags},
        )

    def message(self, request_id: str, sender_id: str, receiver_id: str, content: str, **extra) -> str:
        return self._insert(
            message_crud,
            {
                "ride_request_id": request_id,
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "content": content,
                **extra,
            },
        )


@pytest.fixture
def world(session_factory):
    return World(session_factory)


@pytest.fixture
def people(world):
    """A driver with one upcoming ride, two passengers and an outsider."""
    driver = world.profile("Dana Driver")
    ride = world.ride(driver)
    return {
        "driver": driver,
        "ride": ride,
        "passenger": world.profile("Pat Passenger"),
        "second": world.profile("Sam Second"),
        "outsider": world.profile("Olly Outsider"),
    }


@pytest.fixture
def accepted(world, people):
    """An accepted request between the driver and the first passenger."""
    return world.request(people["ride"], people["passenger"], status="accepted")


@pytest.fixture
def eventually() -> Callable:
    async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0, message: Optional[str] = None) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(message or "condition not met in time")
            await asyncio.sleep(0.005)

    return wait_for


class FakeRedis:
    """The slice of the redis client the session layer touches."""

    def __init__(self):
        self.store: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self.store[key] = value


@pytest.fixture
def fake_redis():
    from app.session import use_client

    client = FakeRedis()
    use_client(client)
    yield client
    use_client(None)
