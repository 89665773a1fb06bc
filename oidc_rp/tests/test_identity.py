"""Tests for identity resolution: binding, linking, creation policy, claim templates."""
import pytest
from sqlalchemy import func, select

from oidc_rp.errors import AmbiguousIdentity, IdentityResolutionFailed
from oidc_rp.identity import IdentityResolver, format_claims, template_keys
from oidc_rp.models import Account, IdentityBinding

ISSUER = "https://idp.example"
ALICE = {"preferred_username": "alice", "email": "alice@x.com"}


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def test_format_claims():
    claims = {"given_name": "Alice", "family_name": "Liddell"}
    assert format_claims("{given_name} {family_name}", claims) == "Alice Liddell"
    assert format_claims("{given_name} {middle_name}", claims) == "Alice"
    with pytest.raises(IdentityResolutionFailed):
        format_claims("{email}", claims, error_on_missing=True)
    assert template_keys("{given_name} {family_name}") == {"given_name", "family_name"}


def test_creates_exactly_one_account_bound_to_identity(db, make_settings):
    settings = make_settings(create_if_does_not_exist="1", link_existing_users="0")
    account = IdentityResolver(db, settings).resolve(ALICE, ISSUER)

    assert account.username == "alice"
    assert account.email == "alice@x.com"
    assert _count(db, Account) == 1
    binding = db.scalar(select(IdentityBinding))
    assert (binding.issuer, binding.subject, binding.account_id) == (ISSUER, "alice", account.id)


def test_creation_disabled_fails(db, make_settings):
    settings = make_settings(create_if_does_not_exist="0")
    with pytest.raises(IdentityResolutionFailed):
        IdentityResolver(db, settings).resolve(ALICE, ISSUER)
    assert _count(db, Account) == 0
    assert _count(db, IdentityBinding) == 0


def test_existing_binding_is_reused(db, make_settings):
    resolver = IdentityResolver(db, make_settings())
    first = resolver.resolve(ALICE, ISSUER)
    second = resolver.resolve({**ALICE, "email": "changed@x.com"}, ISSUER)
    assert first.id == second.id
    assert _count(db, Account) == 1
    assert _count(db, IdentityBinding) == 1


def test_same_subject_other_issuer_is_a_different_identity(db, make_settings):
    resolver = IdentityResolver(db, make_settings(link_existing_users="1"))
    first = resolver.resolve(ALICE, ISSUER)
    second = resolver.resolve(ALICE, "https://other-idp.example")
    # Linked by email rather than duplicated
    assert first.id == second.id
    assert _count(db, IdentityBinding) == 2


def test_link_existing_account_by_email(db, make_settings):
    db.add(Account(username="alice.local", email="Alice@X.com"))
    db.commit()
    settings = make_settings(link_existing_users="1", create_if_does_not_exist="0")
    account = IdentityResolver(db, settings).resolve(ALICE, ISSUER)
    assert account.username == "alice.local"
    assert _count(db, IdentityBinding) == 1


def test_link_by_username(db, make_settings):
    db.add(Account(username="Alice", email="other@x.com"))
    db.commit()
    settings = make_settings(link_existing_users="1", identify_with_username="1", create_if_does_not_exist="0")
    account = IdentityResolver(db, settings).resolve(ALICE, ISSUER)
    assert account.username == "Alice"


def test_ambiguous_link_fails(db, make_settings):
    db.add_all([Account(username="a1", email="alice@x.com"), Account(username="a2", email="alice@x.com")])
    db.commit()
    settings = make_settings(link_existing_users="1")
    with pytest.raises(AmbiguousIdentity):
        IdentityResolver(db, settings).resolve(ALICE, ISSUER)
    assert _count(db, IdentityBinding) == 0
    assert _count(db, Account) == 2


def test_username_taken_without_linking_fails_and_leaves_nothing(db, make_settings):
    db.add(Account(username="alice", email="someone@x.com"))
    db.commit()
    settings = make_settings(link_existing_users="0", create_if_does_not_exist="1")
    with pytest.raises(IdentityResolutionFailed):
        IdentityResolver(db, settings).resolve(ALICE, ISSUER)
    assert _count(db, Account) == 1
    assert _count(db, IdentityBinding) == 0


def test_missing_identity_claim_fails(db, make_settings):
    with pytest.raises(IdentityResolutionFailed) as exc:
        IdentityResolver(db, make_settings()).resolve({"email": "x@x.com"}, ISSUER)
    assert exc.value.error == "no_identity"


def test_missing_email_claim_fails(db, make_settings):
    with pytest.raises(IdentityResolutionFailed) as exc:
        IdentityResolver(db, make_settings()).resolve({"preferred_username": "bob"}, ISSUER)
    assert exc.value.error == "incomplete_user_claim"
    assert _count(db, Account) == 0


def test_nickname_and_display_name_templates(db, make_settings):
    settings = make_settings(
        identity_key="sub",
        nickname_key="nickname",
        displayname_format="{given_name} {family_name}",
        email_format="{preferred_username}@corp.example",
    )
    claims = {
        "sub": "abc-123",
        "nickname": "ally",
        "preferred_username": "alice",
        "given_name": "Alice",
        "family_name": "Liddell",
    }
    account = IdentityResolver(db, settings).resolve(claims, ISSUER)
    assert account.username == "abc-123"
    assert account.nickname == "ally"
    assert account.display_name == "Alice Liddell"
    assert account.email == "alice@corp.example"


def test_disabled_account_is_refused(db, make_settings):
    resolver = IdentityResolver(db, make_settings())
    account = resolver.resolve(ALICE, ISSUER)
    account.is_active = False
    db.commit()
    with pytest.raises(IdentityResolutionFailed):
        resolver.resolve(ALICE, ISSUER)
