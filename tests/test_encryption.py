import pytest

from riskguard.exceptions import DecryptionError, EncryptionError
from riskguard.security.encryption import EncryptedPayload, canonical_json

SECRET = "device-secret-7f3a"


@pytest.fixture()
def salt(encryption):
    return encryption.generate_salt()


def test_round_trip(encryption, salt):
    data = {"amount": 2500.0, "type": "debit", "description": "Seeds for kharif season"}

    sealed = encryption.encrypt_transaction_data(data, SECRET, salt)

    assert len(bytes.fromhex(sealed.iv)) == 12
    assert len(bytes.fromhex(sealed.tag)) == 16
    assert "Seeds" not in sealed.encrypted_data
    assert encryption.decrypt_transaction_data(sealed, SECRET, salt) == data


def test_each_encryption_uses_a_fresh_nonce(encryption, salt):
    first = encryption.encrypt_transaction_data({"a": 1}, SECRET, salt)
    second = encryption.encrypt_transaction_data({"a": 1}, SECRET, salt)
    assert first.iv != second.iv


@pytest.mark.parametrize("password,use_other_salt", [
    ("wrong-secret", False),
    (SECRET, True),
])
def test_wrong_key_material_is_rejected(encryption, salt, password, use_other_salt):
    sealed = encryption.encrypt_transaction_data({"amount": 1}, SECRET, salt)
    other_salt = encryption.generate_salt() if use_other_salt else salt

    with pytest.raises(DecryptionError):
        encryption.decrypt_transaction_data(sealed, password, other_salt)


def test_tampered_ciphertext_is_rejected(encryption, salt):
    sealed = encryption.encrypt_transaction_data({"amount": 1}, SECRET, salt)
    flipped = format(int(sealed.encrypted_data[:2], 16) ^ 0xFF, "02x") + sealed.encrypted_data[2:]

    with pytest.raises(DecryptionError):
        encryption.decrypt_transaction_data(sealed.model_copy(update={"encrypted_data": flipped}), SECRET, salt)


def test_unserialisable_data_raises(encryption, salt):
    with pytest.raises(EncryptionError):
        encryption.encrypt_transaction_data({"when": object()}, SECRET, salt)


def test_offline_payload_round_trip(encryption):
    sealed = encryption.encrypt_offline_data({"id": "rec-1"}, SECRET, "rec-1")

    assert EncryptedPayload.model_validate_json(sealed).iv
    assert encryption.decrypt_offline_data(sealed, SECRET, "rec-1") == {"id": "rec-1"}

    with pytest.raises(DecryptionError):
        encryption.decrypt_offline_data("not json", SECRET, "rec-1")


def test_integrity_hash(encryption):
    data = canonical_json({"b": 2, "a": 1})
    assert data == '{"a":1,"b":2}'

    digest = encryption.generate_secure_hash(data, SECRET)

    assert len(digest) == 64
    assert encryption.verify_data_integrity(data, digest, SECRET)
    assert not encryption.verify_data_integrity(data + " ", digest, SECRET)
    assert not encryption.verify_data_integrity(data, digest, "other-secret")


def test_pin_generation_and_verification(encryption, salt):
    pin = encryption.generate_secure_pin()
    assert len(pin) == 4 and pin.isdigit()

    hashed = encryption.hash_pin("0427", salt)
    assert len(hashed) == 128
    assert encryption.verify_pin("0427", hashed, salt)
    assert not encryption.verify_pin("0428", hashed, salt)


def test_password_hashing(encryption, salt):
    hashed = encryption.hash_password("correct horse", salt)
    assert encryption.verify_password("correct horse", hashed, salt)
    assert not encryption.verify_password("Correct horse", hashed, salt)
