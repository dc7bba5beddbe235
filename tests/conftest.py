"""
Shared fixtures: an in-memory store seeded with one profile, a fake auth
provider and a notifier that records what it was asked to show.
"""

import pytest

from taskdesk.config import RetryPolicy
from taskdesk.identity import IdentityContext, ProfileResolver
from taskdesk_shared.schemas.common import PROFILES_TABLE

from .fakes import FakeAuthProvider, InMemoryStore, RecordingNotifier, make_session

PROFILE_ID = "profile-1"
USER_ID = "user-1"


async def _no_sleep(delay: float) -> None:
    pass


@pytest.fixture
def store():
    s = InMemoryStore()
    s.seed(
        PROFILES_TABLE,
        {"id": PROFILE_ID, "supabase_uid": USER_ID, "email": "dana@example.com", "name": "Dana"},
    )
    return s


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def provider():
    return FakeAuthProvider(session=make_session(USER_ID))


@pytest.fixture
async def identity(store, provider):
    ctx = IdentityContext(provider, ProfileResolver(store, RetryPolicy(), sleep=_no_sleep))
    await ctx.start()
    yield ctx
    await ctx.stop()
