"""Key-value and secret storage primitives.

Every piece of application state lives in a :class:`KVStore` namespace
(``sessions``, ``deals``, ``assessments``, ``usage``). The contract is
deliberately small: ``get``, ``put`` with an optional TTL, ``delete``, and a
cursor-paged ``list`` over a key prefix. Keys are listed in lexical order and
the cursor is simply the last key of the previous page.

Secrets (LLM provider, model, API keys) are read through a
:class:`SecretStore`; the default implementation reads the process
environment.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Mapping, Protocol

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session, sessionmaker

from apex.db import session_scope
from apex.models import KVEntry


def _utcnow() -> datetime:
    # SQLite drops tzinfo, so timestamps are stored as naive UTC
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass
class ListResult:
    keys: list[str] = field(default_factory=list)
    cursor: str | None = None


class KVStore:
    """A single key-value namespace backed by the ``kv_entries`` table."""

    def __init__(self, factory: sessionmaker[Session], namespace: str):
        self._factory = factory
        self.namespace = namespace

    def _live(self):
        return or_(KVEntry.expires_at.is_(None), KVEntry.expires_at > _utcnow())

    def get(self, key: str) -> str | None:
        with session_scope(self._factory) as session:
            value = session.execute(
                select(KVEntry.value).where(
                    KVEntry.namespace == self.namespace, KVEntry.key == key, self._live(),
                )
            ).scalar_one_or_none()
        return value

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        """Store *value* under *key*, replacing any existing value. *ttl* is in seconds."""
        expires_at = _utcnow() + timedelta(seconds=ttl) if ttl is not None else None
        with session_scope(self._factory) as session:
            session.merge(KVEntry(
                namespace=self.namespace, key=key, value=value, expires_at=expires_at,
            ))

    def delete(self, key: str) -> None:
        with session_scope(self._factory) as session:
            session.execute(delete(KVEntry).where(
                KVEntry.namespace == self.namespace, KVEntry.key == key,
            ))

    def list(self, prefix: str = "", cursor: str | None = None, limit: int = 100) -> ListResult:
        """Return up to *limit* keys starting with *prefix*, after *cursor*.

        ``ListResult.cursor`` is ``None`` once the listing is exhausted.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        query = select(KVEntry.key).where(
            KVEntry.namespace == self.namespace,
            KVEntry.key.startswith(prefix, autoescape=True),
            self._live(),
        )
        if cursor:
            query = query.where(KVEntry.key > cursor)
        # one extra row tells us whether another page exists
        query = query.order_by(KVEntry.key).limit(limit + 1)
        with session_scope(self._factory) as session:
            keys = list(session.execute(query).scalars().all())
        if len(keys) > limit:
            keys = keys[:limit]
            return ListResult(keys=keys, cursor=keys[-1])
        return ListResult(keys=keys, cursor=None)


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class Secret:
    """An opaque secret value. Use :meth:`text` to read it."""

    def __init__(self, value: str):
        self._value = value

    def text(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return "Secret('***')"


class SecretStore(Protocol):
    def get(self, name: str) -> Secret | None: ...


class EnvSecretStore:
    """Secret store reading from the process environment (or a given mapping).

    Empty values read as absent.
    """

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Secret | None:
        value = (self._environ.get(name) or "").strip()
        return Secret(value) if value else None
