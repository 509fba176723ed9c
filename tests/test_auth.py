import pytest

from auth import Identity, IdentityGate, JWTIdentityProvider, RoleResolver
from conftest import TEST_SECRET, make_token
from errors import Forbidden, Unauthenticated


@pytest.fixture()
def gate():
    return IdentityGate(JWTIdentityProvider(TEST_SECRET))


class TestIdentityGate:
    def test_yields_lowercased_email(self, gate):
        identity = gate.authenticate(f"Bearer {make_token('Someone@X.com')}")
        assert identity.email == "someone@x.com"

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic abc"])
    def test_absent_or_malformed(self, gate, header):
        with pytest.raises(Unauthenticated):
            gate.authenticate(header)

    def test_garbage_token_is_forbidden(self, gate):
        with pytest.raises(Forbidden):
            gate.authenticate("Bearer not.a.jwt")

    @pytest.mark.parametrize("claim", ["not-an-email", "a@", "@x.com", "a b@x.com"])
    def test_malformed_email_claim_is_forbidden(self, gate, claim):
        with pytest.raises(Forbidden):
            gate.authenticate(f"Bearer {make_token(claim)}")

    def test_audience_is_checked_when_configured(self):
        gate = IdentityGate(JWTIdentityProvider(TEST_SECRET, audience="discovery"))
        ok = make_token("a@x.com", aud="discovery")
        wrong = make_token("a@x.com", aud="elsewhere")
        assert gate.authenticate(f"Bearer {ok}").email == "a@x.com"
        with pytest.raises(Forbidden):
            gate.authenticate(f"Bearer {wrong}")


class TestRoleResolver:
    def test_admin_passes(self, db, admin_email):
        identity = Identity(email=admin_email, claims={})
        assert RoleResolver(db).require_admin(identity) is identity

    def test_unknown_user_fails_closed(self, db):
        with pytest.raises(Forbidden):
            RoleResolver(db).require_admin(Identity(email="ghost@x.com", claims={}))

    @pytest.mark.parametrize("role", ["user", "member", "Admin", None])
    def test_any_other_role_fails(self, db, role):
        db["users"].insert_one({"email": "b@x.com", "role": role})
        with pytest.raises(Forbidden):
            RoleResolver(db).require_admin(Identity(email="b@x.com", claims={}))

    def test_self_or_admin(self, db, admin_email, user_email):
        roles = RoleResolver(db)
        me = Identity(email=user_email, claims={})
        assert roles.require_self_or_admin(me, user_email.upper()) is me
        with pytest.raises(Forbidden):
            roles.require_self_or_admin(me, "other@x.com")
        admin = Identity(email=admin_email, claims={})
        assert roles.require_self_or_admin(admin, "other@x.com") is admin
