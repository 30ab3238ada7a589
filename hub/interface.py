"""Data types shared by the registry, catalog, router and usage tracker."""

from dataclasses import dataclass, field
from enum import Enum


class HealthStatus(str, Enum):
    """Last known reachability of a backend."""
    UNCHECKED = "unchecked"
    ONLINE = "online"
    OFFLINE = "offline"


class BackendRole(str, Enum):
    """Role a backend plays. All roles share the same protocol."""
    CLOUD = "cloud"
    LOCAL = "local"
    CUSTOM = "custom"


class QuotaTier(str, Enum):
    """Plan names reported by the cloud quota endpoint."""
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"
    MAX = "max"

    @classmethod
    def parse(cls, value) -> "QuotaTier":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.FREE

    @property
    def metered(self) -> bool:
        """Whether usage on this tier counts toward the upgrade prompt."""
        return self is QuotaTier.FREE


@dataclass
class Backend:
    """An OpenAI-compatible endpoint known to the registry."""
    address: str
    role: BackendRole = BackendRole.CUSTOM
    credential: str | None = None
    enabled: bool = True
    health: HealthStatus = HealthStatus.UNCHECKED
    detail: str = ""  # last probe detail, for display

    def to_record(self) -> dict:
        """Persisted shape of a custom backend."""
        record = {
            "address": self.address,
            "enabled": self.enabled,
            "status": self.health.value,
        }
        if self.credential:
            record["apiKey"] = self.credential
        return record

    @classmethod
    def from_record(cls, data: dict) -> "Backend":
        try:
            health = HealthStatus(data.get("status", "unchecked"))
        except ValueError:
            health = HealthStatus.UNCHECKED
        return cls(
            address=data["address"],
            role=BackendRole.CUSTOM,
            credential=data.get("apiKey") or None,
            enabled=bool(data.get("enabled", True)),
            health=health,
        )

    @property
    def masked_credential(self) -> str:
        if not self.credential:
            return ""
        if len(self.credential) <= 12:
            return "•" * len(self.credential)
        return f"{self.credential[:8]}...{self.credential[-4:]}"


@dataclass
class Model:
    """A model offered by one backend."""
    name: str
    server: str  # owning backend address
    multimodal: bool = False
    pro: bool = False
    parameter_size: str | None = None


@dataclass
class ProbeResult:
    """Outcome of a single health probe."""
    status: HealthStatus
    detail: str = ""

    @property
    def online(self) -> bool:
        return self.status is HealthStatus.ONLINE


@dataclass
class QuotaSnapshot:
    """Usage figures for the metered cloud backend."""
    used: int
    remaining: int
    limit: int
    tier: QuotaTier = QuotaTier.FREE

    @property
    def utilization(self) -> float | None:
        """Fraction of the limit consumed, or None when there is no limit."""
        if self.limit <= 0:
            return None
        return (self.limit - self.remaining) / self.limit

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "remaining": self.remaining,
            "limit": self.limit,
            "tier": self.tier.value,
        }


@dataclass
class Status:
    """Aggregate view of every backend combined."""
    health: HealthStatus
    active: list[str] = field(default_factory=list)
    model_count: int = 0
    quota: QuotaSnapshot | None = None
    session_expired: bool = False
