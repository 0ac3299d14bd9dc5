"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero business logic). The store maps
rows to these shapes; the services do the work.

The second factor of an identity is modelled as a closed set of variants
(NoSecondFactor, TotpFactor, OutOfBandFactor) built by User.second_factor, so
dispatch code matches on a type instead of comparing method strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from auth.errors import SweepFailedError

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TwoFactorMethod(str, Enum):
    NONE = "NONE"
    TOTP = "TOTP"
    EMAIL = "EMAIL"


class Channel(str, Enum):
    """Side channel used to deliver an out-of-band code."""

    EMAIL = "EMAIL"


class ChallengePurpose(str, Enum):
    TWO_FACTOR = "two_factor"
    PASSWORDLESS = "passwordless"


# ---------------------------------------------------------------------------
# Metadata document
# ---------------------------------------------------------------------------

_SCALARS = (str, int, float, bool, type(None))


class UserMetadata(Mapping):
    """Opaque key-value document attached to an identity.

    Keys are strings, values are JSON scalars (str, int, float, bool, None).
    Nested structures are rejected so the persisted column has one well-defined
    shape. Serialized as compact JSON with sorted keys.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping | None = None) -> None:
        items = dict(data or {})
        for key, value in items.items():
            if not isinstance(key, str):
                raise ValueError(f"metadata keys must be strings, got {type(key).__name__}")
            if not isinstance(value, _SCALARS):
                raise ValueError(f"metadata value for {key!r} must be a JSON scalar, got {type(value).__name__}")
        self._data = items

    def __getitem__(self, key: str):
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, UserMetadata):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"UserMetadata({self._data!r})"

    def to_json(self) -> str:
        return json.dumps(self._data, sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | None) -> UserMetadata:
        if not raw:
            return cls()
        decoded = json.loads(raw)
        if not isinstance(decoded, dict):
            raise ValueError("metadata document must be a JSON object")
        return cls(decoded)


# ---------------------------------------------------------------------------
# Second-factor variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoSecondFactor:
    pass


@dataclass(frozen=True)
class TotpFactor:
    secret: str


@dataclass(frozen=True)
class OutOfBandFactor:
    channel: Channel


SecondFactor = Union[NoSecondFactor, TotpFactor, OutOfBandFactor]


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An identity that can authenticate.

    totp_secret is set only when two_factor_method is TOTP and
    two_factor_enabled is True. The store enforces this on every write.
    """

    username: str
    email: str
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    two_factor_enabled: bool = False
    two_factor_method: TwoFactorMethod = TwoFactorMethod.NONE
    totp_secret: str | None = None
    roles: list[str] = field(default_factory=list)
    metadata: UserMetadata = field(default_factory=UserMetadata)
    created_at: str | None = None

    @property
    def second_factor(self) -> SecondFactor:
        if not self.two_factor_enabled or self.two_factor_method is TwoFactorMethod.NONE:
            return NoSecondFactor()
        if self.two_factor_method is TwoFactorMethod.TOTP:
            return TotpFactor(secret=self.totp_secret or "")
        return OutOfBandFactor(channel=Channel(self.two_factor_method.value))


@dataclass(frozen=True)
class ClientMeta:
    """Origin address and agent string of the client that asked for tokens."""

    ip_address: str = ""
    user_agent: str = ""


@dataclass
class RefreshToken:
    user_id: int
    token_hash: str  # HMAC-SHA256 of the raw token
    expires_at: datetime
    client: ClientMeta = field(default_factory=ClientMeta)
    id: int | None = None
    created_at: str | None = None


@dataclass
class Challenge:
    """A one-time code waiting to be echoed back with its request id.

    Covers both the second step of a two-factor login and a passwordless login;
    purpose keeps the two flows from completing each other.
    """

    user_id: int
    request_id: str
    code: str
    purpose: ChallengePurpose
    channel: Channel
    expires_at: datetime
    client: ClientMeta = field(default_factory=ClientMeta)
    id: int | None = None
    created_at: str | None = None


@dataclass
class PasswordResetRequest:
    user_id: int
    code: str
    expires_at: datetime
    id: int | None = None
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Results handed back to callers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    roles: list[str]
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class TotpPending:
    """Password accepted; a TOTP code must be presented with pending_token."""

    pending_token: str
    expires_in: int
    method: TwoFactorMethod = TwoFactorMethod.TOTP


@dataclass(frozen=True)
class ChallengeIssued:
    """A code was sent over channel; echo it back with request_id."""

    request_id: str
    channel: Channel


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    provisioning_uri: str


LoginResult = Union[TokenPair, TotpPending, ChallengeIssued]


@dataclass
class SweepResult:
    """Outcome of one expiry sweep, per collection."""

    deleted: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    def raise_for_failures(self) -> None:
        """Raise SweepFailedError naming every collection that failed."""
        if self.failures:
            raise SweepFailedError(self.failures)
