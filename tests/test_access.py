import pytest

from access import AuthUser, can_act, require
from errors import Forbidden

OWNER = AuthUser(id="u1", email="owner@bookstore.io", name="Owner")
STRANGER = AuthUser(id="u2", email="stranger@bookstore.io", name="Stranger")
ADMIN = AuthUser(id="a1", email="admin@bookstore.io", name="Admin", role="admin")
RESOURCE = {"user_id": "u1"}


@pytest.mark.parametrize("action", ["view", "return", "cancel"])
def test_owner_actions(action):
    assert can_act(OWNER, RESOURCE, action)
    assert not can_act(STRANGER, RESOURCE, action)
    assert can_act(ADMIN, RESOURCE, action)


@pytest.mark.parametrize("action", ["approve", "delete", "update_status", "list_all", "manage"])
def test_admin_only_actions(action):
    assert can_act(ADMIN, RESOURCE, action)
    assert not can_act(OWNER, RESOURCE, action)


def test_anonymous_and_unknown_actions():
    assert not can_act(None, RESOURCE, "view")
    assert not can_act(ADMIN, RESOURCE, "teleport")
    assert not can_act(OWNER, None, "view")


def test_require_raises_forbidden():
    require(OWNER, RESOURCE, "view", "nope")
    with pytest.raises(Forbidden, match="nope"):
        require(STRANGER, RESOURCE, "view", "nope")
