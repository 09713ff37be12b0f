from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, computed_field

from .enums import ConnectionRole


class PoolStats(BaseModel):
    """Point-in-time statistics of one endpoint's pool."""

    model_config = ConfigDict(frozen=True)

    role: ConnectionRole
    endpoint: str
    initialized: bool
    open_connections: int = 0
    idle: int = 0
    max_open_conns: int  # 0 = unlimited
    max_idle_conns: int
    conn_max_lifetime: timedelta
    conn_max_idle_time: timedelta
    generation: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def in_use(self) -> int:
        """Connections currently checked out by callers."""
        return max(self.open_connections - self.idle, 0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def utilization_pct(self) -> float:
        if self.max_open_conns == 0:
            return 0.0
        return (self.in_use / self.max_open_conns) * 100


class RouterStats(BaseModel):
    """Statistics for the master pool and every replica pool, in configuration order."""

    model_config = ConfigDict(frozen=True)

    master: PoolStats
    replicas: tuple[PoolStats, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def open_connections(self) -> int:
        return self.master.open_connections + sum(r.open_connections for r in self.replicas)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def in_use(self) -> int:
        return self.master.in_use + sum(r.in_use for r in self.replicas)
