from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class ProvisioningSnapshot:
    state: str
    reason: str | None = None
    incident_id: str | None = None
    degraded_at: datetime | None = None
    healthy_at: datetime | None = None
    last_checked_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_degraded(self) -> bool:
        return self.state == "DEGRADED"


@dataclass(frozen=True)
class CredentialCheck:
    # Outcome of probing the upstream API with a credential pair.
    ok: bool
    http_status: int | None = None
    error_kind: str | None = None
    message: str | None = None
    latency_ms: float | None = None
