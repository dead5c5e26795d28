import pytest

from app.core.exceptions import NotAuthenticated, NotFound
from app.sync.session import RideSession


class StaticAuth:
    def __init__(self, user_id=None):
        self.user_id = user_id

    def get_current_user(self):
        return {"id": self.user_id} if self.user_id else None


async def test_start_requires_a_signed_in_user(backend, broker):
    with pytest.raises(NotAuthenticated):
        await RideSession.start(StaticAuth(), backend, broker)
    assert broker.channel_count == 0


async def test_session_wires_stores_chats_and_counter(backend, broker, world, people, accepted):
    world.message(accepted, people["driver"], people["passenger"], "welcome aboard")
    session = await RideSession.start(StaticAuth(people["passenger"]), backend, broker, recount_interval=0)
    try:
        assert session.unread.total == 1

        trips = await session.passenger_requests()
        assert trips is await session.passenger_requests()
        assert [v.id for v in trips.upcoming()] == [accepted]

        chat = await session.open_chat(accepted)
        assert chat is await session.open_chat(accepted)
        assert session.chat(accepted) is chat
        await chat.flush()
        assert session.unread.total == 0

        session.close_chat(accepted)
        with pytest.raises(NotFound):
            session.chat(accepted)
    finally:
        session.close()

    assert broker.channel_count == 0
    assert trips.closed and chat.closed and session.unread.closed


async def test_driver_and_passenger_views_are_separate(backend, broker, world, people):
    request_id = world.request(people["ride"], people["passenger"])
    session = await RideSession.start(StaticAuth(people["driver"]), backend, broker, recount_interval=0)
    try:
        dashboard = await session.driver_requests()
        trips = await session.passenger_requests()
        assert [v.id for v in dashboard.pending()] == [request_id]
        assert trips.items == []
    finally:
        session.close()
