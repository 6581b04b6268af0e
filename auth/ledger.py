"""
auth/ledger.py -- RefreshTokenLedger: one record per outstanding refresh token.

Rotation protocol:
  rotate() verifies the token signature, then runs ONE transaction whose
  first statement is

      DELETE FROM refresh_tokens
       WHERE id = :jti AND token_digest = :digest AND expires_at > :now

  The database serializes concurrent writers on that statement, so among
  any number of racing rotations of the same token exactly one sees
  rowcount == 1. That caller records a tombstone for the consumed id and
  inserts the replacement record in the same transaction. Every other caller
  sees rowcount == 0, finds the tombstone and fails with TokenReused.

  A record that is absent without a tombstone was revoked (logout,
  revoke-all, password change) or never existed: TokenInvalid.

Sweeping:
  sweep_expired() deletes only rows with expires_at < now. rotate() only
  consumes rows with expires_at > now, so the two never compete for a row.

Layer rule: no imports from api/, admission/, or audit/.
"""

from __future__ import annotations

import hashlib
import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from auth.models import RefreshTokenClaims, RefreshTokenRecord
from auth.tokens import TokenIssuer
from core.database import Database, consumed_refresh_tokens, from_iso, refresh_tokens, to_iso
from core.errors import GatekeeperError, TokenExpired, TokenInvalid, TokenReused

logger = logging.getLogger("gatekeeper.ledger")


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RefreshTokenLedger:
    """Persistence and rotation of refresh-token records.

    Usage:
        ledger = RefreshTokenLedger(db, issuer)
        record, token = ledger.issue(operator.id)
        new_record, new_token = ledger.rotate(token)
    """

    def __init__(self, db: Database, issuer: TokenIssuer) -> None:
        self._db = db
        self._issuer = issuer

    # ------------------------------------------------------------------
    # Issue / rotate
    # ------------------------------------------------------------------

    def issue(self, owner_id: str, conn: Connection | None = None) -> tuple[RefreshTokenRecord, str]:
        """Create a record and the signed token that embeds its id."""
        issued_at = self._issuer.now()
        expires_at = self._issuer.refresh_expiry(issued_at)
        record_id = uuid.uuid4().hex
        token = self._issuer.issue_refresh(owner_id, record_id, issued_at=issued_at, expires_at=expires_at)
        record = RefreshTokenRecord(
            id=record_id,
            owner_id=owner_id,
            token_digest=token_digest(token),
            issued_at=issued_at,
            expires_at=expires_at,
        )
        with self._db.transaction(conn) as c:
            c.execute(
                refresh_tokens.insert().values(
                    id=record.id,
                    owner_id=record.owner_id,
                    token_digest=record.token_digest,
                    issued_at=to_iso(record.issued_at),
                    expires_at=to_iso(record.expires_at),
                )
            )
        return record, token

    def rotate(self, token: str) -> tuple[RefreshTokenRecord, str]:
        """Consume ``token`` and return its replacement.

        Raises TokenInvalid / TokenExpired for bad signatures or lapsed
        tokens, TokenReused when the token was already rotated.
        """
        claims = self._issuer.verify_refresh(token)
        return self.rotate_verified(claims, token)

    def rotate_verified(
        self, claims: RefreshTokenClaims, token: str, conn: Connection | None = None
    ) -> tuple[RefreshTokenRecord, str]:
        """Rotation for callers that already verified the token signature.

        With ``conn`` the rotation joins the caller's transaction, which can
        then read further rows under the same write lock and roll the
        rotation back by raising.
        """
        digest = token_digest(token)
        now = to_iso(self._issuer.now())
        with self._db.transaction(conn) as c:
            consumed = c.execute(
                refresh_tokens.delete().where(
                    (refresh_tokens.c.id == claims.record_id)
                    & (refresh_tokens.c.token_digest == digest)
                    & (refresh_tokens.c.expires_at > now)
                )
            ).rowcount
            if consumed == 1:
                c.execute(
                    consumed_refresh_tokens.insert().values(
                        id=claims.record_id,
                        owner_id=claims.owner_id,
                        consumed_at=now,
                        expires_at=to_iso(claims.expires_at),
                    )
                )
                return self.issue(claims.owner_id, conn=c)
            # Classified inside the transaction and raised after it, so an
            # expired record is cleaned up when the transaction is our own.
            failure = self._classify_rejection(c, claims, digest, now)
        raise failure

    def _classify_rejection(
        self, conn: Connection, claims: RefreshTokenClaims, digest: str, now: str
    ) -> GatekeeperError:
        tombstone = conn.execute(
            select(consumed_refresh_tokens.c.id).where(consumed_refresh_tokens.c.id == claims.record_id)
        ).fetchone()
        if tombstone is not None:
            return TokenReused(f"refresh record {claims.record_id} already rotated", owner_id=claims.owner_id)

        row = conn.execute(select(refresh_tokens).where(refresh_tokens.c.id == claims.record_id)).fetchone()
        if row is None:
            return TokenInvalid(f"refresh record {claims.record_id} not found (revoked or unknown)")
        if row.token_digest != digest:
            return TokenInvalid(f"refresh record {claims.record_id} digest mismatch")
        if row.expires_at <= now:
            conn.execute(refresh_tokens.delete().where(refresh_tokens.c.id == claims.record_id))
            return TokenExpired(f"refresh record {claims.record_id} expired")
        return TokenInvalid(f"refresh record {claims.record_id} could not be consumed")

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, record_id: str, owner_id: str, conn: Connection | None = None) -> bool:
        """Delete one record if it belongs to ``owner_id``. Returns True if deleted.

        The owner check prevents one operator from ending another's session
        even if they learn its record id.
        """
        with self._db.transaction(conn) as c:
            result = c.execute(
                refresh_tokens.delete().where(
                    (refresh_tokens.c.id == record_id) & (refresh_tokens.c.owner_id == owner_id)
                )
            )
        return result.rowcount > 0

    def revoke_all(self, owner_id: str, conn: Connection | None = None) -> int:
        """Delete every record owned by ``owner_id``. Returns the number removed."""
        with self._db.transaction(conn) as c:
            result = c.execute(refresh_tokens.delete().where(refresh_tokens.c.owner_id == owner_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Maintenance / queries
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Remove records and tombstones past their expiry. Returns records removed."""
        now = to_iso(self._issuer.now())
        with self._db.transaction() as conn:
            removed = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.expires_at < now)).rowcount
            tombstones = conn.execute(
                consumed_refresh_tokens.delete().where(consumed_refresh_tokens.c.expires_at < now)
            ).rowcount
        if removed or tombstones:
            logger.info("Swept %d expired refresh records and %d tombstones", removed, tombstones)
        return removed

    def count_for_owner(self, owner_id: str) -> int:
        with self._db.transaction() as conn:
            count = conn.execute(
                select(func.count()).select_from(refresh_tokens).where(refresh_tokens.c.owner_id == owner_id)
            ).scalar()
        return count or 0

    def count_active(self, owner_id: str) -> int:
        """Unexpired records of ``owner_id``: the sessions that can still refresh."""
        now = to_iso(self._issuer.now())
        with self._db.transaction() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(refresh_tokens)
                .where((refresh_tokens.c.owner_id == owner_id) & (refresh_tokens.c.expires_at > now))
            ).scalar()
        return count or 0

    def get(self, record_id: str) -> RefreshTokenRecord | None:
        with self._db.transaction() as conn:
            row = conn.execute(select(refresh_tokens).where(refresh_tokens.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        owner_id=row.owner_id,
        token_digest=row.token_digest,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
    )
