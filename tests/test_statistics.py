import pytest

from proxytunnel.statistic.memory import MemoryAuthenticator, MemoryConfig
from proxytunnel.statistic.statistics import (
    StatisticError,
    new_authenticator,
    register_authenticator_creator,
)


def _counting_creator():
    calls = []

    def creator(config):
        calls.append(config)
        return MemoryAuthenticator(config)

    return creator, calls


def test_registered_creator_used_case_insensitively():
    creator, calls = _counting_creator()
    register_authenticator_creator("FAKE_A", creator)
    config = MemoryConfig()
    auth = new_authenticator(config, "fake_a")
    auth.add_user("u1")
    assert auth.auth_user("u1").hash == "u1"
    assert calls == [config]
    auth.close()


def test_authenticator_cached_per_config():
    creator, calls = _counting_creator()
    register_authenticator_creator("FAKE_B", creator)
    first_config = MemoryConfig()
    second_config = MemoryConfig()
    first = new_authenticator(first_config, "FAKE_B")
    again = new_authenticator(first_config, "FAKE_B")
    other = new_authenticator(second_config, "FAKE_B")
    assert first is again
    assert other is not first
    assert len(calls) == 2


def test_unknown_driver():
    with pytest.raises(StatisticError, match="not found"):
        new_authenticator(MemoryConfig(), "no_such_driver")


def test_creator_failure_not_cached():
    calls = []

    def failing(config):
        calls.append(config)
        raise StatisticError("boom")

    register_authenticator_creator("FAKE_C", failing)
    config = MemoryConfig()
    with pytest.raises(StatisticError, match="boom"):
        new_authenticator(config, "FAKE_C")
    with pytest.raises(StatisticError, match="boom"):
        new_authenticator(config, "FAKE_C")
    assert len(calls) == 2


def test_memory_driver_registered():
    auth = new_authenticator(MemoryConfig(), "memory")
    assert isinstance(auth, MemoryAuthenticator)
    auth.add_user("someone")
    assert [u.hash for u in auth.list_users()] == ["someone"]
    auth.close()