from __future__ import annotations

import pytest

from account_directory.exceptions import UniqueConstraintError
from account_directory.models.enums import IdentityField, RecordClass
from account_directory.repositories.identity_repository import IdentityRepository

USERNAME = IdentityField.USERNAME
EMAIL = IdentityField.EMAIL


def test_claim_and_find_holder_case_insensitively(identities: IdentityRepository) -> None:
    identities.claim(RecordClass.USERS, 1, USERNAME, "Ada")

    holder = identities.find_holder(USERNAME, "ADA")

    assert holder is not None
    assert holder.record_class is RecordClass.USERS
    assert holder.record_id == 1
    assert identities.find_holder(EMAIL, "Ada") is None


def test_same_value_different_field_does_not_collide(identities: IdentityRepository) -> None:
    identities.claim(RecordClass.USERS, 1, USERNAME, "ada@example.com")
    identities.claim(RecordClass.USERS, 2, EMAIL, "ada@example.com")

    assert len(identities.claims_for(RecordClass.USERS, 2)) == 1


@pytest.mark.parametrize(
    ("holder_class", "claimant_class"),
    [
        (RecordClass.USERS, RecordClass.MEMBERS),
        (RecordClass.MEMBERS, RecordClass.USERS),
        (RecordClass.MEMBERS, RecordClass.MEMBERS),
    ],
)
def test_collision_across_record_classes(
    identities: IdentityRepository,
    holder_class: RecordClass,
    claimant_class: RecordClass,
) -> None:
    identities.claim(holder_class, 1, EMAIL, "ada@example.com")

    with pytest.raises(UniqueConstraintError) as excinfo:
        identities.claim(claimant_class, 2, EMAIL, "Ada@Example.com")

    assert excinfo.value.field == "email"
    assert excinfo.value.record_class == str(holder_class)
    assert excinfo.value.errors == {"email": ["The email has already been taken."]}


def test_reclaim_by_same_record_is_a_no_op(identities: IdentityRepository) -> None:
    identities.claim(RecordClass.USERS, 1, USERNAME, "ada")
    identities.claim(RecordClass.USERS, 1, USERNAME, "ada")

    assert len(identities.claims_for(RecordClass.USERS, 1)) == 1


def test_ensure_available_ignores_own_claim(identities: IdentityRepository) -> None:
    identities.claim(RecordClass.USERS, 1, USERNAME, "ada")

    identities.ensure_available(USERNAME, "ada", RecordClass.USERS, 1)
    with pytest.raises(UniqueConstraintError):
        identities.ensure_available(USERNAME, "ada", RecordClass.USERS, 2)
    with pytest.raises(UniqueConstraintError):
        identities.ensure_available(USERNAME, "ada", RecordClass.MEMBERS, 1)


def test_move_releases_the_old_value(identities: IdentityRepository) -> None:
    identities.claim(RecordClass.USERS, 1, USERNAME, "ada")

    identities.move(RecordClass.USERS, 1, USERNAME, "countess")

    assert identities.find_holder(USERNAME, "ada") is None
    holder = identities.find_holder(USERNAME, "countess")
    assert holder is not None and holder.record_id == 1
    identities.claim(RecordClass.MEMBERS, 5, USERNAME, "ada")


def test_move_onto_taken_value_keeps_old_claim(identities: IdentityRepository) -> None:
    identities.claim(RecordClass.USERS, 1, USERNAME, "ada")
    identities.claim(RecordClass.MEMBERS, 2, USERNAME, "grace")

    with pytest.raises(UniqueConstraintError):
        identities.move(RecordClass.USERS, 1, USERNAME, "Grace")

    holder = identities.find_holder(USERNAME, "ada")
    assert holder is not None and holder.record_id == 1
