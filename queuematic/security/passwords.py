from functools import lru_cache

from pwdlib import PasswordHash


password_hash = PasswordHash.recommended()


def hash_password(raw_password: str) -> str:
    return password_hash.hash(raw_password)


def verify_and_upgrade(raw_password: str, hashed_password: str) -> tuple[bool, str | None]:
    """Verify a password and return a fresh hash when the stored one uses outdated parameters."""
    return password_hash.verify_and_update(raw_password, hashed_password)


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return password_hash.hash('queuematic-unknown-user')


def burn_verification(raw_password: str) -> None:
    # Unknown usernames take as long to reject as wrong passwords.
    password_hash.verify(raw_password, _dummy_hash())
