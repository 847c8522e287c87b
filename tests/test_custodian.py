import pytest

from copy_trading.custody.custodian import KeyCipher, WalletCustodian
from copy_trading.db.engine import Database
from copy_trading.errors import CustodianUnavailable, InvalidParameters, KeyNotFound

_KEY = "0x" + "4f" * 32
_ADDRESS = "0x" + "9e" * 20


def test_cipher_round_trip_uses_fresh_salt() -> None:
    cipher = KeyCipher("correct horse")

    first = cipher.encrypt(_KEY)
    second = cipher.encrypt(_KEY)

    assert first != second
    assert cipher.decrypt(first) == _KEY
    assert cipher.decrypt(second) == _KEY


def test_cipher_requires_passphrase() -> None:
    with pytest.raises(InvalidParameters):
        KeyCipher("")


def test_signer_per_user(database: Database) -> None:
    custodian = WalletCustodian(database, KeyCipher("correct horse"))
    custodian.store_key("f-1", _KEY, address=_ADDRESS)

    signer = custodian.get_signer("f-1")

    assert signer.user_id == "f-1"
    assert signer.private_key == _KEY
    assert signer.address == _ADDRESS
    assert _KEY not in repr(signer)
    assert custodian.get_signer("f-1") is not signer


def test_missing_key(database: Database) -> None:
    custodian = WalletCustodian(database, KeyCipher("correct horse"))

    assert custodian.has_key("f-1") is False
    with pytest.raises(KeyNotFound):
        custodian.get_signer("f-1")


def test_wrong_passphrase_is_infrastructure_failure(database: Database) -> None:
    WalletCustodian(database, KeyCipher("correct horse")).store_key("f-1", _KEY)
    other = WalletCustodian(database, KeyCipher("battery staple"))

    with pytest.raises(CustodianUnavailable):
        other.get_signer("f-1")


def test_generate_and_replace_key(database: Database) -> None:
    custodian = WalletCustodian(database, KeyCipher("correct horse"))

    generated = custodian.generate_key("f-1")

    assert generated.startswith("0x")
    assert len(generated) == 66
    assert custodian.get_signer("f-1").private_key == generated
    custodian.store_key("f-1", _KEY)
    assert custodian.get_signer("f-1").private_key == _KEY
