from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import psycopg

from authorizer.config import AuthConfig, build_postgres_dsn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class User:
    """Login-history record derived from verified claims."""

    email: str
    given_name: str = ""
    family_name: str = ""
    picture_url: str = ""


class Repository(Protocol):
    """
    Persistence collaborator. Called fire-and-forget after a successful callback.
    """

    def upsert_user(self, user: User) -> None:
        """Insert or update the user keyed by email. Raises on failure."""


class PostgresRepository:
    """Repository backed by a `users` table in PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn)

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                  id bigserial PRIMARY KEY,
                  email text NOT NULL UNIQUE,
                  given_name text NOT NULL DEFAULT '',
                  family_name text NOT NULL DEFAULT '',
                  picture_url text NOT NULL DEFAULT '',
                  created_at timestamptz NOT NULL DEFAULT now(),
                  updated_at timestamptz NOT NULL DEFAULT now()
                );
                """)

    def upsert_user(self, user: User) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO users (email, given_name, family_name, picture_url)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (email) DO UPDATE SET
                      given_name = EXCLUDED.given_name,
                      family_name = EXCLUDED.family_name,
                      picture_url = EXCLUDED.picture_url,
                      updated_at = now()
                    """,
                    (user.email, user.given_name, user.family_name, user.picture_url),
                )
                affected = cur.rowcount
        logger.info("User upserted: email=%s rows=%d", user.email, affected)


class NoopRepository:
    """Used when no database is configured: login history is not recorded."""

    def upsert_user(self, user: User) -> None:
        logger.debug("Login history disabled (no database configured): email=%s", user.email)


def build_repository(cfg: AuthConfig) -> Repository:
    dsn: Optional[str] = build_postgres_dsn(cfg)
    if not dsn:
        logger.warning("Postgres is not configured; login history will not be recorded")
        return NoopRepository()
    return PostgresRepository(dsn)
