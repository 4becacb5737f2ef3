"""Configuration management for Ticketry Python components."""
import os
from functools import lru_cache

from pydantic import BaseModel, Field


class ServiceIdentity(BaseModel):
    """Service identity for telemetry."""

    name: str
    version: str
    team: str = "support"
    domain: str = "tickets"
    pipeline: str = "ticket-inbox-sync"


class PostgresConfig(BaseModel):
    """Postgres configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "ticketry"
    user: str = "ticketry"
    password: str = ""

    @classmethod
    def from_env(cls) -> "PostgresConfig":
        """Load from environment variables."""
        return cls(
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=int(os.getenv("POSTGRES_PORT", "5432")),
            database=os.getenv("POSTGRES_DB", "ticketry"),
            user=os.getenv("POSTGRES_USER", "ticketry"),
            password=os.getenv("POSTGRES_PASSWORD", ""),
        )

    @property
    def connection_string(self) -> str:
        """Build psycopg connection string."""
        return (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.user} password={self.password}"
        )


class TicketryConfig(BaseModel):
    """Main configuration for Ticketry components."""

    env: str = Field(default="dev")
    service: ServiceIdentity
    postgres: PostgresConfig
    log_level: str = "INFO"


@lru_cache
def get_config() -> TicketryConfig:
    """Load configuration from environment variables."""
    return TicketryConfig(
        env=os.getenv("ENV", "dev"),
        service=ServiceIdentity(
            name=os.getenv("SERVICE_NAME", "ticketry-mail-sync"),
            version=os.getenv("SERVICE_VERSION", "0.1.0"),
            team=os.getenv("TEAM", "support"),
            domain=os.getenv("DOMAIN", "tickets"),
            pipeline=os.getenv("PIPELINE", "ticket-inbox-sync"),
        ),
        postgres=PostgresConfig.from_env(),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
