import os

# Settings are read at import time; keep the developer's .env and shell out of tests
os.environ["AUTH_VERIFY_URL"] = ""
os.environ["AUTH_JWT_SECRET"] = "test-secret"
os.environ["DATABASE_URL"] = ""

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from app.config import Settings
from app.main import create_app
from models.community import Community, Member, Moderator
from models.feed import Post
from models.user import Follow, User

JWT_SECRET = "test-secret"

ALICE, BOB, CAROL = 1, 2, 3
PYTHON, RUST = 1, 2


def make_token(user_id: int) -> str:
    return jwt.encode({"sub": str(user_id)}, JWT_SECRET, algorithm="HS256")


def auth(user_id: int) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


async def seed(app):
    """alice moderates c/python, bob joined it, carol follows alice."""
    async with app.state.session_factory() as session:
        session.add_all([
            User(id=ALICE, username="alice", email="alice@example.com"),
            User(id=BOB, username="bob"),
            User(id=CAROL, username="carol"),
            Community(id=PYTHON, name="python", title="Python", description="snakes"),
            Community(id=RUST, name="rust", title="Rust"),
        ])
        await session.flush()
        session.add_all([
            Moderator(community_id=PYTHON, user_id=ALICE),
            Member(community_id=PYTHON, user_id=ALICE),
            Member(community_id=PYTHON, user_id=BOB),
            Follow(follower_id=CAROL, followed_id=ALICE),
            Post(id=1, type="text", title="Hello python", description="first", user_id=ALICE, community_id=PYTHON),
            Post(id=2, type="media", title="Crab pic", media_src="https://cdn.example/crab.png",
                 user_id=CAROL, community_id=RUST),
        ])
        await session.commit()


@pytest.fixture
def config(tmp_path):
    return Settings(
        DATABASE_PATH=str(tmp_path / "cirqls-test.db"),
        DATABASE_URL="",
        AUTH_JWT_SECRET=JWT_SECRET,
        AUTH_VERIFY_URL="",
        WS_HANDSHAKE_TIMEOUT=2.0,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        test_client.portal.call(seed, app)
        yield test_client
