import os

# Must be set before db/config are imported anywhere
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["AUTH_JWT_SECRET"] = "test-secret"
os.environ["PUSHER_ENABLED"] = "false"

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402

from db import SessionLocal, create_tables, drop_tables  # noqa: E402
from models import Conversation, ConversationParticipant, Message, Profile  # noqa: E402

ALICE_ID = "00000000-0000-0000-0000-00000000a11c"
BOB_ID = "00000000-0000-0000-0000-000000000b0b"
CAROL_ID = "00000000-0000-0000-0000-0000000ca201"
SUPPORT_ID = "00000000-0000-0000-0000-00000005a990"

SEED_PROFILES = [
    (ALICE_ID, "Alice Adler"),
    (BOB_ID, "Bob Berger"),
    (CAROL_ID, "Carol Cramer"),
    (SUPPORT_ID, "Fahrschule Support"),
    ("00000000-0000-0000-0000-000000000d01", "Dana Dorn"),
    ("00000000-0000-0000-0000-000000000e01", "Emil Engel"),
    ("00000000-0000-0000-0000-000000000f01", "Frida Fuchs"),
    ("00000000-0000-0000-0000-000000000a02", "Jane Doe"),
]


@pytest.fixture(scope="function")
def test_db():
    """Create all tables with seeded profiles before each test and drop them after"""
    create_tables()
    db = SessionLocal()
    for profile_id, name in SEED_PROFILES:
        db.add(Profile(id=profile_id, full_name=name))
    db.commit()
    try:
        yield db
    finally:
        db.close()
        drop_tables()


@pytest.fixture
def alice(test_db):
    return test_db.query(Profile).filter(Profile.id == ALICE_ID).first()


@pytest.fixture
def bob(test_db):
    return test_db.query(Profile).filter(Profile.id == BOB_ID).first()


@pytest.fixture
def carol(test_db):
    return test_db.query(Profile).filter(Profile.id == CAROL_ID).first()


@pytest.fixture
def make_conversation(test_db):
    def _make(user_a: str, user_b: str, updated_at=None) -> Conversation:
        now = updated_at or datetime.utcnow()
        conversation = Conversation(created_at=now, updated_at=now)
        conversation.participants = [
            ConversationParticipant(user_id=user_a),
            ConversationParticipant(user_id=user_b),
        ]
        test_db.add(conversation)
        test_db.commit()
        test_db.refresh(conversation)
        return conversation

    return _make


@pytest.fixture
def add_message(test_db):
    def _add(conversation, user_id: str, content: str, *, created_at=None, read_at=None, **extra) -> Message:
        message = Message(
            conversation_id=conversation.id,
            user_id=user_id,
            content=content,
            created_at=created_at or datetime.utcnow(),
            read_at=read_at,
            **extra,
        )
        test_db.add(message)
        test_db.commit()
        test_db.refresh(message)
        return message

    return _add


@pytest.fixture
def base_time():
    return datetime(2026, 9, 30, 9, 0, 0)
