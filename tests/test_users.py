import pytest

from errors import Conflict, Forbidden, NotFound
from users import UserDirectory


@pytest.fixture()
def users(db):
    return UserDirectory(db)


def test_create_is_insert_only(db, users):
    users.create("New@x.com", name="New")
    db["users"].update_one({"email": "new@x.com"}, {"$set": {"role": "member"}})
    with pytest.raises(Conflict):
        users.create("new@x.com", name="Overwrite")
    user = users.get("new@x.com")
    assert user["name"] == "New"
    assert user["role"] == "member"


def test_new_users_start_unsubscribed(users):
    users.create("a@x.com")
    user = users.get("a@x.com")
    assert user["role"] == "user"
    assert user["isSubscribed"] is False


def test_subscription_cannot_grant_admin(users):
    users.create("a@x.com")
    with pytest.raises(Forbidden):
        users.set_subscription("a@x.com", True, role="admin")
    assert users.get("a@x.com")["role"] == "user"


def test_subscription_on_missing_user(users):
    with pytest.raises(NotFound):
        users.set_subscription("ghost@x.com", True)


def test_set_role_on_missing_user(users):
    with pytest.raises(NotFound):
        users.set_role("ghost@x.com", "admin")
