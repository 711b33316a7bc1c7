"""
models.py – Entities and enumerations of the authenticator core.

  Authenticator          – one enrolled account (persisted)
  Category               – named grouping of authenticators (persisted)
  AuthenticatorCategory  – many-to-many binding between the two (persisted)
  GeneratedCode          – a computed one-time code (derived, never stored)

The entities are plain dataclasses.  to_dict()/from_dict() convert them to
and from the JSON document written by storage.VaultDatabase.
"""

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from errors import ValidationError

# Icon references starting with this marker point at a user-supplied icon;
# every other value is the key of a built-in icon.
CUSTOM_ICON_PREFIX = "@"

ALL_CATEGORY_NAME = "All"


class Algorithm(str, Enum):
    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA512 = "SHA512"


class AuthenticatorType(str, Enum):
    TOTP = "totp"  # time based, RFC 6238
    HOTP = "hotp"  # counter based, RFC 4226


class SortMode(str, Enum):
    ALPHABETICAL_ASCENDING = "AlphabeticalAscending"
    ALPHABETICAL_DESCENDING = "AlphabeticalDescending"
    COPY_COUNT_DESCENDING = "CopyCountDescending"
    CUSTOM = "Custom"


class DisplayMode(str, Enum):
    DEFAULT = "Default"
    COMPACT = "Compact"
    TILE = "Tile"


@dataclass
class Authenticator:
    """
    One enrolled account.

    Attributes
    ----------
    secret : str
        Normalised base32 key material (see otp.normalize_secret).  This is
        the identity key of the record and never changes after creation.
    issuer, username : str
        Display labels; neither is unique.
    type : AuthenticatorType
        Time based (TOTP) or counter based (HOTP).
    algorithm : Algorithm
        HMAC hash function.
    digits : int
        Code length, 1..10.
    period : int
        Seconds per time window (TOTP only).
    counter : int
        Moving factor of a HOTP authenticator.
    ranking : int
        Custom display order; ties are broken by issuer.
    icon : str or None
        Built-in icon key, or CUSTOM_ICON_PREFIX followed by a custom icon id.
    copy_count : int
        How many times a code of this authenticator was copied.
    """

    secret: str
    issuer: str
    username: str = ""
    type: AuthenticatorType = AuthenticatorType.TOTP
    algorithm: Algorithm = Algorithm.SHA1
    digits: int = 6
    period: int = 30
    counter: int = 0
    ranking: int = 0
    icon: Optional[str] = None
    copy_count: int = 0

    def __post_init__(self) -> None:
        # Accept the plain strings found in URIs and forms ("hotp", "sha256").
        try:
            self.type = AuthenticatorType(
                self.type.lower() if isinstance(self.type, str) else self.type
            )
        except ValueError:
            raise ValidationError(f"Unsupported authenticator type: {self.type!r}", field="type") from None
        try:
            self.algorithm = Algorithm(
                self.algorithm.upper() if isinstance(self.algorithm, str) else self.algorithm
            )
        except ValueError:
            raise ValidationError(f"Unsupported algorithm: {self.algorithm!r}", field="algorithm") from None

    @property
    def is_time_based(self) -> bool:
        return self.type == AuthenticatorType.TOTP

    @property
    def has_custom_icon(self) -> bool:
        return bool(self.icon) and self.icon.startswith(CUSTOM_ICON_PREFIX)

    @property
    def custom_icon_id(self) -> Optional[str]:
        """Return the custom icon id without its marker, or None."""
        if not self.has_custom_icon:
            return None
        return self.icon[len(CUSTOM_ICON_PREFIX):]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["algorithm"] = self.algorithm.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Authenticator":
        return cls(
            secret=data["secret"],
            issuer=data.get("issuer", ""),
            username=data.get("username") or "",
            type=AuthenticatorType(data.get("type", AuthenticatorType.TOTP.value)),
            algorithm=Algorithm(data.get("algorithm", Algorithm.SHA1.value)),
            digits=int(data.get("digits", 6)),
            period=int(data.get("period", 30)),
            counter=int(data.get("counter", 0)),
            ranking=int(data.get("ranking", 0)),
            icon=data.get("icon"),
            copy_count=int(data.get("copy_count", 0)),
        )


@dataclass
class Category:
    """A named grouping.  id is None only for the synthetic "All" entry."""

    id: Optional[str]
    name: str
    ranking: int = 0

    @property
    def is_all(self) -> bool:
        return self.id is None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Category":
        return cls(id=data["id"], name=data.get("name", ""), ranking=int(data.get("ranking", 0)))

    @classmethod
    def all(cls) -> "Category":
        """Return the pseudo-category meaning "no category filter"."""
        return cls(id=None, name=ALL_CATEGORY_NAME)


@dataclass(frozen=True)
class AuthenticatorCategory:
    authenticator_secret: str
    category_id: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AuthenticatorCategory":
        return cls(
            authenticator_secret=data["authenticator_secret"],
            category_id=data["category_id"],
        )


@dataclass(frozen=True)
class GeneratedCode:
    """
    A computed code.

    Time-based codes carry their validity window as Unix timestamps
    (valid_from inclusive, valid_until exclusive); counter-based codes carry
    the counter they were generated at.
    """

    value: str
    valid_from: Optional[int] = None
    valid_until: Optional[int] = None
    counter: Optional[int] = None

    def seconds_remaining(self, now: float) -> Optional[int]:
        """Whole seconds left in the validity window, or None for HOTP."""
        if self.valid_until is None:
            return None
        return max(0, math.ceil(self.valid_until - now))

    def is_valid_at(self, now: float) -> bool:
        if self.valid_from is None or self.valid_until is None:
            return True
        return self.valid_from <= now < self.valid_until

