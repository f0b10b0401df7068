from __future__ import annotations

from dataclasses import dataclass

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from todo_api.config import Settings
from todo_api.logging import get_logger
from todo_api.service.errors import PasswordHashCorrupted, ServerError
from todo_api.storage.models import PHC_MAX_LENGTH

logger = get_logger(__name__)


@dataclass(frozen=True)
class HashParams:
    """Argon2id cost parameters. ``memory`` is in KiB."""

    memory: int = 19456
    iterations: int = 2
    parallelism: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "HashParams":
        return cls(
            memory=settings.password_hash_memory,
            iterations=settings.password_hash_iterations,
            parallelism=settings.password_hash_parallelism,
        )


def sprinkle_pepper(pepper: str, raw: str) -> str:
    """Interleave ``pepper`` and ``raw`` one character at a time, pepper first.

    Whatever is left of the longer string is appended unchanged, so
    ``sprinkle_pepper("pepper", "abcde") == "paebpcpdeer"``.
    """
    shorter = min(len(pepper), len(raw))
    mixed = [p + r for p, r in zip(pepper, raw)]
    return "".join(mixed) + pepper[shorter:] + raw[shorter:]


def _hasher(params: HashParams) -> PasswordHasher:
    return PasswordHasher(
        time_cost=params.iterations,
        memory_cost=params.memory,
        parallelism=params.parallelism,
        type=Type.ID,
    )


def hash_password(raw: str, pepper: str, params: HashParams | None = None) -> str:
    """Return an Argon2id PHC string for the peppered password with a fresh salt."""
    digest = _hasher(params or HashParams()).hash(sprinkle_pepper(pepper, raw))
    if not 0 < len(digest) <= PHC_MAX_LENGTH:
        raise ServerError("password hash exceeds storage width")
    return digest


def verify_password(raw: str, pepper: str, phc: str) -> bool:
    """Check ``raw`` against a stored PHC string.

    Cost parameters come from the PHC string itself. A mismatch returns
    ``False``, as does a password that cannot be encoded as UTF-8; an
    unparseable PHC string raises :class:`PasswordHashCorrupted`.
    """
    if not phc or len(phc) > PHC_MAX_LENGTH:
        raise PasswordHashCorrupted("stored password hash is malformed")
    try:
        return PasswordHasher(type=Type.ID).verify(phc, sprinkle_pepper(pepper, raw))
    except UnicodeEncodeError:
        return False
    except InvalidHashError as exc:
        raise PasswordHashCorrupted("stored password hash is malformed") from exc
    except VerificationError:
        return False


def needs_rehash(phc: str, params: HashParams | None = None) -> bool:
    """True when ``phc`` was produced with other parameters than ``params``."""
    try:
        return _hasher(params or HashParams()).check_needs_rehash(phc)
    except (InvalidHashError, ValueError):
        logger.warning("password_rehash_check_failed")
        return False


class PasswordCodec:
    """Binds the server pepper and configured cost to the hashing helpers."""

    def __init__(self, pepper: str, params: HashParams | None = None) -> None:
        if not pepper:
            raise ValueError("pepper must not be empty")
        self._pepper = pepper
        self.params = params or HashParams()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordCodec":
        return cls(
            settings.password_pepper.get_secret_value(),
            HashParams.from_settings(settings),
        )

    def hash(self, raw: str) -> str:
        return hash_password(raw, self._pepper, self.params)

    def verify(self, raw: str, phc: str) -> bool:
        return verify_password(raw, self._pepper, phc)

    def needs_rehash(self, phc: str) -> bool:
        return needs_rehash(phc, self.params)
