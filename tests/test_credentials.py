import pytest

from console_identity.auth.credentials import (
    REASON_DIGIT,
    REASON_EMPTY,
    REASON_LENGTH,
    REASON_LOWERCASE,
    REASON_SPECIAL,
    REASON_TOO_LONG,
    REASON_UPPERCASE,
    CredentialStore,
)
from console_identity.exceptions import PasswordPolicyViolation
from console_identity.utils.validation import ValidationError


@pytest.fixture
def credentials(store):
    return CredentialStore(store, rounds=4)


def test_hash_and_verify(credentials):
    hashed = credentials.hash("S3cure!pass")
    assert hashed.startswith("$2")
    assert credentials.verify("S3cure!pass", hashed)
    assert not credentials.verify("s3cure!pass", hashed)


def test_hashes_are_salted(credentials):
    assert credentials.hash("S3cure!pass") != credentials.hash("S3cure!pass")


def test_verify_tolerates_missing_or_malformed_hash(credentials):
    assert not credentials.verify("S3cure!pass", None)
    assert not credentials.verify("S3cure!pass", "")
    assert not credentials.verify("S3cure!pass", "not-a-bcrypt-hash")
    assert not credentials.verify("", credentials.hash("S3cure!pass"))


@pytest.mark.parametrize(
    "password, reason",
    [
        ("abc", REASON_LENGTH),
        ("abcdefgh", REASON_UPPERCASE),
        ("ABCDEFGH", REASON_LOWERCASE),
        ("Abcdefgh", REASON_DIGIT),
        ("Abcdefg1", REASON_SPECIAL),
        ("Aa1!" + "x" * 80, REASON_TOO_LONG),
    ],
)
def test_complexity_reports_first_failing_rule(password, reason):
    result = CredentialStore.validate_complexity(password)
    assert not result.valid
    assert result.reason == reason


def test_complexity_accepts_policy_password():
    result = CredentialStore.validate_complexity("Abcdef1!")
    assert result.valid
    assert result.reason is None


def test_require_complexity_raises_with_reason():
    with pytest.raises(PasswordPolicyViolation) as excinfo:
        CredentialStore.require_complexity("abcdefgh")
    assert excinfo.value.reason == REASON_UPPERCASE


def test_hash_rejects_over_long_secret(credentials):
    with pytest.raises(PasswordPolicyViolation):
        credentials.hash("é" * 40)


def test_hash_refuses_empty_password(credentials):
    with pytest.raises(PasswordPolicyViolation) as excinfo:
        credentials.hash("")
    assert excinfo.value.reason == REASON_EMPTY


@pytest.mark.parametrize("password", [" ", "a", "\u00e9", "x" * 72])
def test_every_hashable_password_verifies(credentials, password):
    assert credentials.verify(password, credentials.hash(password))


def test_weak_hash_is_upgraded_on_successful_verify(store):
    weak = CredentialStore(store, rounds=4)
    identity = store.insert_identity("alice", credential_hash=weak.hash("Abcdef1!"))

    strong = CredentialStore(store, rounds=5)
    assert strong.needs_rehash(identity.credential_hash)
    assert strong.verify_identity(identity, "Abcdef1!")

    upgraded = store.get_identity("alice").credential_hash
    assert upgraded != identity.credential_hash
    assert not strong.needs_rehash(upgraded)


def test_failed_verify_does_not_touch_hash(store, credentials):
    identity = store.insert_identity("alice", credential_hash=credentials.hash("Abcdef1!"))
    assert not credentials.verify_identity(identity, "wrong")
    assert store.get_identity("alice").credential_hash == identity.credential_hash


def test_directory_managed_identity_is_never_verified_locally(store, credentials):
    identity = store.insert_identity(
        "dave", credential_hash=credentials.hash("Abcdef1!"), directory_managed=True
    )
    assert not credentials.verify_identity(identity, "Abcdef1!")
    with pytest.raises(ValidationError):
        credentials.set_password(identity, "N3w!pass")


def test_set_password_enforces_policy(store, credentials):
    identity = store.insert_identity("alice", credential_hash=credentials.hash("Abcdef1!"))
    with pytest.raises(PasswordPolicyViolation):
        credentials.set_password(identity, "weak")
    credentials.set_password(identity, "N3w!passw")
    refreshed = store.get_identity("alice")
    assert credentials.verify("N3w!passw", refreshed.credential_hash)


def test_standalone_hashing_without_store():
    standalone = CredentialStore(rounds=4)
    assert standalone.verify("Abcdef1!", standalone.hash("Abcdef1!"))
