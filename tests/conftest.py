import pytest

from app.auth.verify import auth_dependency
from tests.factories import USER_A_ID, FakeRedis, FakeTransaction


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": USER_A_ID}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


@pytest.fixture
def fake_transaction():
    return FakeTransaction()


@pytest.fixture
def patch_transaction(monkeypatch, fake_transaction):
    """Replace `get_db_transaction` in the given module with the fake."""

    def _patch(module_path: str) -> FakeTransaction:
        async def _get_db_transaction():
            return fake_transaction

        monkeypatch.setattr(f"{module_path}.get_db_transaction", _get_db_transaction)
        return fake_transaction

    return _patch


@pytest.fixture
def fake_redis():
    return FakeRedis()
