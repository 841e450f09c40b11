"""
auth/state_store.py -- Server-side store for OAuth CSRF state values.

The OAuth redirect dance needs the `state` value generated at /auth/google to
still be known when the provider sends the browser back to the callback. We
keep it server-side, keyed by a random flow id that the browser carries in an
httpOnly cookie, instead of in a per-process session object -- any API worker
sharing the database can complete the flow.

Entries are single-use (consume() deletes before returning) and expire after a
TTL (default 10 minutes). purge_expired() trims abandoned flows; the API
lifespan calls it periodically.

Usage:
    states = OAuthStateStore(engine)
    flow_id = states.issue("google", state)
    expected = states.consume(flow_id)   # state string, or None if unknown/expired/used
"""

from __future__ import annotations

import secrets
import time

from sqlalchemy import Column, Float, MetaData, String, Table
from sqlalchemy.engine import Engine

_DEFAULT_TTL = 10 * 60  # 10 minutes in seconds

_metadata = MetaData()

_oauth_states = Table(
    "oauth_states",
    _metadata,
    Column("flow_id", String(64), primary_key=True),
    Column("state", String(64), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("created_at", Float, nullable=False),  # epoch seconds
)


class OAuthStateStore:
    def __init__(self, engine: Engine, ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        self.engine = engine
        _metadata.create_all(self.engine)

    def issue(self, provider: str, state: str) -> str:
        """Remember `state` for one callback and return the flow id that names it."""
        flow_id = secrets.token_urlsafe(32)
        with self.engine.begin() as conn:
            conn.execute(
                _oauth_states.insert().values(flow_id=flow_id, state=state, provider=provider, created_at=time.time())
            )
        return flow_id

    def consume(self, flow_id: str | None, provider: str | None = None) -> str | None:
        """Return the stored state for flow_id and delete it.

        Returns None if the flow id is missing, unknown, already used, expired,
        or was issued for a different provider. The row is deleted in every
        case where it exists, so a state value can never be checked twice.
        Only the caller whose DELETE removed the row gets the state back; a
        concurrent consume that read the same row loses.
        """
        if not flow_id:
            return None
        with self.engine.begin() as conn:
            row = conn.execute(_oauth_states.select().where(_oauth_states.c.flow_id == flow_id)).fetchone()
            if row is None:
                return None
            result = conn.execute(_oauth_states.delete().where(_oauth_states.c.flow_id == flow_id))
            if result.rowcount != 1:
                return None
        if time.time() - row.created_at > self.ttl:
            return None
        if provider is not None and row.provider != provider:
            return None
        return row.state

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number of rows removed."""
        cutoff = time.time() - self.ttl
        with self.engine.begin() as conn:
            result = conn.execute(_oauth_states.delete().where(_oauth_states.c.created_at < cutoff))
        return result.rowcount
