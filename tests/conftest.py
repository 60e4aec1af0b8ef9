from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from shared_expenses.db.models import Base
from shared_expenses.db.session import make_sessionmaker
from shared_expenses.domain import RegisteredIdentity
from shared_expenses.services.friends import ensure_friendship
from shared_expenses.services.splits import SplitConfig, SplitParticipant, create_split
from shared_expenses.services.transactions import create_transaction
from shared_expenses.services.users import create_user


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return make_sessionmaker(engine)


@pytest.fixture
async def session(sessionmaker):
    async with sessionmaker() as s:
        yield s


@pytest.fixture
async def people(session):
    """alice, bob and carol are mutual friends; dave knows nobody."""
    alice = await create_user(session, display_name="Alice", tg_user_id=101)
    bob = await create_user(session, display_name="Bob", tg_user_id=102)
    carol = await create_user(session, display_name="Carol", tg_user_id=103)
    dave = await create_user(session, display_name="Dave")
    await ensure_friendship(session, alice.id, bob.id)
    await ensure_friendship(session, alice.id, carol.id)
    await ensure_friendship(session, bob.id, carol.id)
    return SimpleNamespace(alice=alice, bob=bob, carol=carol, dave=dave)


def equal_config(paid_by: int, *user_ids: int, group_id=None) -> SplitConfig:
    return SplitConfig(
        split_type="equal",
        paid_by=paid_by,
        participants=[SplitParticipant(RegisteredIdentity(uid)) for uid in user_ids],
        group_id=group_id,
    )


def custom_config(paid_by: int, shares: dict, group_id=None) -> SplitConfig:
    return SplitConfig(
        split_type="custom",
        paid_by=paid_by,
        participants=[SplitParticipant(RegisteredIdentity(uid), share=Decimal(str(s))) for uid, s in shares.items()],
        group_id=group_id,
    )


async def add_expense(session, config: SplitConfig, amount, *, owner_id=None):
    tx = await create_transaction(session, owner_id=owner_id or config.paid_by, amount=amount)
    return await create_split(session, tx.id, config)
