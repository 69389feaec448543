import re

from hypehaus.helpers import is_valid_email, is_valid_phone, new_credential


def test_credentials_are_unique_over_10000_generations():
    creds = [new_credential() for _ in range(10_000)]
    assert len(set(creds)) == len(creds)


def test_credential_format():
    assert re.fullmatch(r"TCK-[0-9A-F]{32}", new_credential())


def test_email_check():
    assert is_valid_email("asha@example.com")
    assert is_valid_email("  asha@example.co.in ")
    assert not is_valid_email("asha@example")
    assert not is_valid_email("")
    assert not is_valid_email(None)


def test_phone_check():
    assert is_valid_phone("+91 98765 43210")
    assert is_valid_phone("555-0100")
    assert not is_valid_phone("12")
    assert not is_valid_phone(None)
