import pytest

from crowdgov.core.governance_exceptions import (
    AlreadyExistsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from crowdgov.governance.dao_registry import DaoRegistry


@pytest.fixture
def registry(store):
    return DaoRegistry(store)


class TestDaoRegistry:
    def test_create_and_get(self, registry, at):
        registry.create_dao(at("alice", 2), "dao.alpha", "Alpha", url="https://alpha.example")
        dao = registry.get_dao("dao.alpha")
        assert dao.owner == "alice"
        assert dao.active
        assert dao.created_at == 2

    def test_duplicate(self, registry, at):
        registry.create_dao(at("alice"), "dao.alpha", "Alpha")
        with pytest.raises(AlreadyExistsError):
            registry.create_dao(at("bob"), "dao.alpha", "Other")

    def test_name_required(self, registry, at):
        with pytest.raises(InvalidInputError) as exc_info:
            registry.create_dao(at("alice"), "dao.alpha", "  ")
        assert exc_info.value.field == "name"

    def test_missing(self, registry):
        with pytest.raises(NotFoundError):
            registry.get_dao("dao.none")

    def test_deactivate_by_owner_or_dao_account(self, registry, at):
        registry.create_dao(at("alice"), "dao.alpha", "Alpha")
        registry.create_dao(at("alice"), "dao.beta", "Beta")

        with pytest.raises(UnauthorizedError):
            registry.deactivate_dao(at("mallory"), "dao.alpha")
        registry.deactivate_dao(at("alice"), "dao.alpha")
        registry.deactivate_dao(at("dao.beta"), "dao.beta")

        assert registry.list_daos(active_only=True) == []
        assert len(registry.list_daos()) == 2
        with pytest.raises(InvalidStateError):
            registry.require_active("dao.alpha")
