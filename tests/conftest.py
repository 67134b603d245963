import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BOT_NUMBER", "5511900000000")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from leadrelay.database import init_db  # noqa: E402

BOT_NUMBER = "5511900000000"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers requested delays and advances the clock."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


class FakeSend:
    """Async send primitive that fails its first `failures` calls."""

    def __init__(self, failures: int = 0, delay: float = 0.0, receipt=None):
        self.calls: list[tuple[str, str, dict]] = []
        self.failures = failures
        self.delay = delay
        self.receipt = receipt if receipt is not None else {"ok": True}

    async def __call__(self, recipient: str, content: str, opts: dict):
        self.calls.append((recipient, content, opts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.calls) <= self.failures:
            raise ConnectionError("channel unavailable")
        return self.receipt

    @property
    def texts(self) -> list[str]:
        return [content for _, content, _ in self.calls]


def make_payload(
    text: str = "Hi",
    sender: str = "5511988887777",
    message_id: str | None = "MSG-1",
    event: str = "messages.upsert",
    from_me: bool = False,
    timestamp: int = 1_700_000_000,
    **key_extra,
) -> dict:
    key = {"remoteJid": f"{sender}@s.whatsapp.net", "fromMe": from_me, **key_extra}
    if message_id is not None:
        key["id"] = message_id
    return {
        "event": event,
        "instance": "leadrelay",
        "sender": f"{BOT_NUMBER}@s.whatsapp.net",
        "data": {
            "key": key,
            "pushName": "Ana",
            "message": {"conversation": text},
            "messageType": "conversation",
            "messageTimestamp": timestamp,
        },
    }


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()

