"""
Session, Donation, and payment-status records.

All records are frozen dataclasses. Nothing outside SessionManager builds a
Session, and nothing outside the reconciliation layer replaces a Donation in
the cache; everyone else only reads them.
"""

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Mapping, NamedTuple, Optional
from urllib.parse import urlsplit, parse_qs

from .constants import DEGRADED_TOKEN_PREFIX


class SessionState(enum.Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class PaymentStatus(enum.Enum):
    PENDING = 1
    APPROVED = 2
    DECLINED = 3
    EXPIRED = 4

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING

    @classmethod
    def parse(cls, value) -> Optional["PaymentStatus"]:
        """Accepts a name ("approved"), a numeric status_id, or an instance."""
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                return None
        text = str(value).strip().upper()
        if text.isdigit():
            return cls.parse(int(text))
        return cls.__members__.get(text)


def _parse_dt(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _parse_amount(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid donation amount: {value!r}")


def _first(data: Mapping[str, Any], *keys):
    for key in keys:
        if data.get(key) not in (None, ""):
            return data[key]
    return None


# ─── Session ─────────────────────────────────────────────────────

class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class Session:
    user_id: Any
    email: str
    roles: FrozenSet[str]
    access_token: str
    refresh_token: str
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    degraded: bool = False
    # Server ordering of roles; the frozenset above is for membership checks.
    _role_order: tuple = field(default=(), compare=False, repr=False)

    @property
    def primary_role(self) -> Optional[str]:
        """First role in server order, lowercased. None without roles."""
        ordered = self._role_order or tuple(sorted(self.roles))
        return ordered[0].lower() if ordered else None

    @classmethod
    def build(cls, profile: Mapping[str, Any], access_token: str, refresh_token: str,
              issued_at: Optional[datetime] = None, degraded: bool = False) -> "Session":
        roles = tuple(profile.get("roles") or ())
        return cls(
            user_id=profile.get("id"),
            email=profile.get("email", ""),
            roles=frozenset(roles),
            access_token=access_token,
            refresh_token=refresh_token,
            issued_at=issued_at or datetime.now(timezone.utc),
            first_name=profile.get("first_name"),
            last_name=profile.get("last_name"),
            degraded=degraded,
            _role_order=roles,
        )

    def with_tokens(self, access_token: str, refresh_token: str) -> "Session":
        return replace(self, access_token=access_token, refresh_token=refresh_token,
                       issued_at=datetime.now(timezone.utc))

    def with_profile(self, profile: Mapping[str, Any]) -> "Session":
        return Session.build(
            {**self.profile_record(), **profile},
            self.access_token, self.refresh_token,
            issued_at=self.issued_at, degraded=self.degraded,
        )

    def has_role(self, role: str) -> bool:
        return role.upper() in {r.upper() for r in self.roles}

    @property
    def looks_degraded(self) -> bool:
        return self.degraded or self.access_token.startswith(DEGRADED_TOKEN_PREFIX) \
            or self.refresh_token.startswith(DEGRADED_TOKEN_PREFIX)

    def profile_record(self) -> Dict[str, Any]:
        """The ``currentUser`` slot as persisted."""
        return {
            "id": self.user_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "roles": list(self._role_order or sorted(self.roles)),
            "loginAt": self.issued_at.isoformat(),
            "degraded": self.degraded,
        }

    @classmethod
    def from_record(cls, profile: Mapping[str, Any], access_token: str, refresh_token: str) -> "Session":
        if not isinstance(profile, Mapping) or "email" not in profile:
            raise ValueError("Persisted profile is missing required fields")
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise ValueError("Persisted tokens must be strings")
        if not isinstance(profile["email"], str):
            raise ValueError("Persisted email must be a string")
        roles = profile.get("roles") or []
        if not isinstance(roles, (list, tuple)) or not all(isinstance(r, str) for r in roles):
            raise ValueError("Persisted roles must be a list of strings")
        return cls.build(
            profile, access_token, refresh_token,
            issued_at=_parse_dt(profile.get("loginAt")),
            degraded=bool(profile.get("degraded", False)),
        )


# ─── Donation ────────────────────────────────────────────────────

@dataclass(frozen=True)
class Donation:
    id: Any
    donor_name: str
    donor_email: str
    amount: Decimal
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_order_id: Optional[str] = None
    reference_code: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    description: Optional[str] = None

    @property
    def awaiting_gateway(self) -> bool:
        """PENDING with a gateway order: the gateway still owes us an outcome."""
        return self.status is PaymentStatus.PENDING and self.gateway_order_id is not None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Donation":
        status = PaymentStatus.parse(_first(data, "status", "status_id", "status_code"))
        if status is None:
            raise ValueError(f"Unknown donation status in payload: {data.get('status', data.get('status_id'))!r}")
        return cls(
            id=data["id"],
            donor_name=data.get("donor_name", ""),
            donor_email=data.get("donor_email", ""),
            amount=_parse_amount(data.get("amount", 0)),
            currency=data.get("currency", ""),
            status=status,
            gateway_order_id=_first(data, "gateway_order_id", "payu_order_id"),
            reference_code=data.get("reference_code"),
            created_at=_parse_dt(data.get("created_at")),
            paid_at=_parse_dt(data.get("paid_at")),
            description=data.get("description"),
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "donor_name": self.donor_name,
            "donor_email": self.donor_email,
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
        }

    def merge(self, newer: "Donation") -> "Donation":
        """
        Apply a freshly fetched copy of this donation.

        A PENDING copy never replaces a terminal one (out-of-order response,
        discarded whole). A gateway order id, once known, is never cleared.
        """
        if self.status.is_terminal and not newer.status.is_terminal:
            return self
        if newer.gateway_order_id is None and self.gateway_order_id is not None:
            newer = replace(newer, gateway_order_id=self.gateway_order_id)
        return newer

    def with_status(self, status: PaymentStatus, gateway_order_id: Optional[str] = None,
                    paid_at: Optional[datetime] = None) -> "Donation":
        if self.status.is_terminal and not status.is_terminal:
            return self
        changes = {"status": status}
        if gateway_order_id and self.gateway_order_id is None:
            changes["gateway_order_id"] = gateway_order_id
        if paid_at and self.paid_at is None:
            changes["paid_at"] = paid_at
        return replace(self, **changes)


@dataclass(frozen=True)
class DonationPage:
    """One page of ``GET /donations``."""
    donations: tuple
    total: int = 0
    limit: Optional[int] = None
    offset: Optional[int] = None

    @property
    def any_awaiting_gateway(self) -> bool:
        return any(d.awaiting_gateway for d in self.donations)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "DonationPage":
        donations = tuple(Donation.from_api(d) for d in data.get("donations", []))
        return cls(
            donations=donations,
            total=data.get("total", len(donations)),
            limit=data.get("limit"),
            offset=data.get("offset"),
        )

    def with_donations(self, fn) -> "DonationPage":
        return replace(self, donations=tuple(fn(d) for d in self.donations))

    def merge(self, newer: "DonationPage") -> "DonationPage":
        """Per-donation merge against the copies this page already holds."""
        known = {d.id: d for d in self.donations}
        merged = tuple(known[d.id].merge(d) if d.id in known else d for d in newer.donations)
        return replace(newer, donations=merged)


# ─── Payment gateway ─────────────────────────────────────────────

@dataclass(frozen=True)
class PaymentStatusResult:
    status: Optional[PaymentStatus]
    donation_id: Any = None
    gateway_order_id: Optional[str] = None
    reference_code: Optional[str] = None
    transaction_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and self.status.is_terminal

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "PaymentStatusResult":
        return cls(
            status=PaymentStatus.parse(_first(data, "status", "status_id")),
            donation_id=data.get("donation_id"),
            gateway_order_id=_first(data, "gateway_order_id", "payu_order_id", "order_id"),
            reference_code=data.get("reference_code"),
            transaction_id=data.get("transaction_id"),
            raw=dict(data),
        )

    def supersedes(self, older: Optional["PaymentStatusResult"]) -> bool:
        """False when this is a PENDING answer arriving after a terminal one."""
        if older is None or not older.is_terminal:
            return True
        return self.is_terminal


@dataclass(frozen=True)
class PaymentReturn:
    """Parameters the gateway appends when it redirects the donor back."""
    reference_code: Optional[str] = None
    transaction_id: Optional[str] = None
    donation_id: Optional[str] = None
    gateway_order_id: Optional[str] = None

    @property
    def can_resume(self) -> bool:
        return bool(self.donation_id or self.gateway_order_id)

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> "PaymentReturn":
        def pick(*keys):
            for key in keys:
                value = params.get(key)
                if isinstance(value, (list, tuple)):
                    value = value[0] if value else None
                if value:
                    return value
            return None

        return cls(
            reference_code=pick("referenceCode"),
            transaction_id=pick("transactionId"),
            donation_id=pick("donationId", "extra1"),
            gateway_order_id=pick("orderId", "payuOrderId"),
        )

    @classmethod
    def from_url(cls, url: str) -> "PaymentReturn":
        return cls.from_query(parse_qs(urlsplit(url).query))
