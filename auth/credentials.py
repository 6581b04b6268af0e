"""
auth/credentials.py -- CredentialStore: operator accounts and secret checks.

Security design decisions:
  Hashing: bcrypt used directly (no passlib wrapper) with a configurable work
       factor. bcrypt.checkpw compares in constant time, so the comparison
       leaks no more timing than the hash primitive itself.

  Enumeration: authenticate() always runs one bcrypt check, against a dummy
       hash when the email is unknown, and raises the same InvalidCredentials
       family for unknown email, wrong secret and disabled account. The
       precise cause is logged, never returned.

  Strength: check_secret_strength() enforces length 8..128 characters and at
       most 72 bytes of UTF-8 (bcrypt rejects longer input), one upper-case,
       one lower-case, one digit, one symbol, and rejects a denylist of common
       secrets (case-insensitive).

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_operator is the mapper. Callers never touch SQL directly.
All queries use bound parameters.

Layer rule: no imports from api/, admission/, or audit/.
"""

from __future__ import annotations

import logging
import re
import uuid

import bcrypt
from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.models import OperatorAccount
from core.database import Database, from_iso, operators, to_iso, utcnow
from core.errors import AccountDisabled, InvalidCredentials, ValidationFailed, WeakSecret

logger = logging.getLogger("gatekeeper.credentials")

MIN_SECRET_LENGTH = 8
MAX_SECRET_LENGTH = 128
MAX_SECRET_BYTES = 72

COMMON_SECRETS: frozenset[str] = frozenset(
    {
        "password",
        "123456",
        "123456789",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "123123",
        "password1!",
        "password123!",
        "p@ssw0rd",
        "p@ssw0rd1",
        "passw0rd!",
        "welcome1!",
        "welcome123!",
        "admin123!",
        "qwerty123!",
        "changeme1!",
    }
)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9\s]")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def check_secret_strength(secret: str) -> list[str]:
    """Return the list of unmet strength rules. Empty list means acceptable."""
    problems: list[str] = []
    if len(secret) < MIN_SECRET_LENGTH:
        problems.append(f"Password must be at least {MIN_SECRET_LENGTH} characters long.")
    if len(secret) > MAX_SECRET_LENGTH:
        problems.append(f"Password must be at most {MAX_SECRET_LENGTH} characters long.")
    elif len(secret.encode("utf-8")) > MAX_SECRET_BYTES:
        problems.append(f"Password must be at most {MAX_SECRET_BYTES} bytes.")
    if not _UPPER.search(secret):
        problems.append("Password must contain at least one uppercase letter.")
    if not _LOWER.search(secret):
        problems.append("Password must contain at least one lowercase letter.")
    if not _DIGIT.search(secret):
        problems.append("Password must contain at least one number.")
    if not _SYMBOL.search(secret):
        problems.append("Password must contain at least one special character.")
    if secret.lower() in COMMON_SECRETS:
        problems.append("Password is too common.")
    return problems


class CredentialStore:
    """Repository for OperatorAccount plus the password primitives.

    Usage:
        store = CredentialStore(db, rounds=12)
        operator = store.create_operator("ops@example.com", "S3cure!pass", "Ops")
        operator = store.authenticate("ops@example.com", "S3cure!pass")
    """

    def __init__(self, db: Database, *, rounds: int = 12, default_role: str = "admin") -> None:
        self._db = db
        self._rounds = rounds
        self.default_role = default_role
        # Timing equalization: computed once so the first unknown-email
        # login is not measurably slower than later ones.
        self._dummy_hash = self.hash_secret("gatekeeper_timing_dummy")

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def hash_secret(self, plain: str) -> str:
        """bcrypt hash with this store's work factor.

        Raises WeakSecret above 72 bytes of UTF-8, which bcrypt refuses.
        """
        encoded = plain.encode("utf-8")
        if len(encoded) > MAX_SECRET_BYTES:
            raise WeakSecret(
                f"secret of {len(encoded)} bytes exceeds the bcrypt limit",
                detail=[f"Password must be at most {MAX_SECRET_BYTES} bytes."],
            )
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    @staticmethod
    def verify_secret(plain: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed stored hash or input past the 72-byte limit: a mismatch.
            return False

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, email: str, secret: str) -> OperatorAccount:
        """Return the operator for a correct email/secret pair.

        Raises InvalidCredentials (unknown email, wrong secret) or
        AccountDisabled (a subclass rendered identically). bcrypt always
        runs exactly once, whichever branch is taken.
        """
        operator = self.get_by_email(email)
        if operator is None:
            self.verify_secret(secret, self._dummy_hash)
            raise InvalidCredentials("unknown email")
        if not self.verify_secret(secret, operator.secret_hash):
            raise InvalidCredentials(f"wrong secret for operator {operator.id}")
        if not operator.active:
            raise AccountDisabled(f"operator {operator.id} is disabled")
        return operator

    def verify_current_secret(self, operator_id: str, secret: str) -> OperatorAccount:
        """Re-check the secret of an already identified operator (password change)."""
        operator = self.get_by_id(operator_id)
        if operator is None:
            self.verify_secret(secret, self._dummy_hash)
            raise InvalidCredentials(f"operator {operator_id} not found")
        if not self.verify_secret(secret, operator.secret_hash):
            raise InvalidCredentials(f"wrong current secret for operator {operator_id}")
        if not operator.active:
            raise AccountDisabled(f"operator {operator_id} is disabled")
        return operator

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> OperatorAccount | None:
        with self._db.transaction() as conn:
            row = conn.execute(select(operators).where(operators.c.email == normalize_email(email))).fetchone()
        return _row_to_operator(row) if row is not None else None

    def get_by_id(self, operator_id: str, conn: Connection | None = None) -> OperatorAccount | None:
        with self._db.transaction(conn) as c:
            row = c.execute(select(operators).where(operators.c.id == operator_id)).fetchone()
        return _row_to_operator(row) if row is not None else None

    def list_operators(self) -> list[OperatorAccount]:
        with self._db.transaction() as conn:
            rows = conn.execute(select(operators).order_by(operators.c.email)).fetchall()
        return [_row_to_operator(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_operator(
        self,
        email: str,
        secret: str,
        display_name: str,
        role: str | None = None,
        *,
        enforce_strength: bool = True,
        conn: Connection | None = None,
    ) -> OperatorAccount:
        """Provision a new operator account (out-of-band: CLI, fixtures).

        Raises WeakSecret when enforce_strength is set and the secret fails
        the policy, ValidationFailed when the email is already registered.
        """
        if enforce_strength:
            problems = check_secret_strength(secret)
            if problems:
                raise WeakSecret("initial secret rejected", detail=problems)
        now = to_iso(utcnow())
        operator_id = uuid.uuid4().hex
        values = {
            "id": operator_id,
            "email": normalize_email(email),
            "secret_hash": self.hash_secret(secret),
            "display_name": display_name.strip(),
            "role": role or self.default_role,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self._db.transaction(conn) as c:
                c.execute(operators.insert().values(**values))
        except IntegrityError as exc:
            raise ValidationFailed(
                "email already registered",
                detail=["An operator with that email already exists."],
            ) from exc
        logger.info("Operator provisioned id=%s", operator_id)
        return self.get_by_id(operator_id, conn)

    def change_secret(self, operator_id: str, new_secret: str, conn: Connection | None = None) -> None:
        """Replace an operator's secret. Raises WeakSecret on policy failure."""
        problems = check_secret_strength(new_secret)
        if problems:
            raise WeakSecret(f"weak secret rejected for operator {operator_id}", detail=problems)
        new_hash = self.hash_secret(new_secret)
        with self._db.transaction(conn) as c:
            c.execute(
                operators.update()
                .where(operators.c.id == operator_id)
                .values(secret_hash=new_hash, updated_at=to_iso(utcnow()))
            )

    def set_active(self, operator_id: str, active: bool, conn: Connection | None = None) -> bool:
        with self._db.transaction(conn) as c:
            result = c.execute(
                operators.update()
                .where(operators.c.id == operator_id)
                .values(is_active=active, updated_at=to_iso(utcnow()))
            )
        return result.rowcount > 0

    def record_login(self, operator_id: str, conn: Connection | None = None) -> None:
        """Stamp last_login_at with the current UTC time."""
        with self._db.transaction(conn) as c:
            c.execute(operators.update().where(operators.c.id == operator_id).values(last_login_at=to_iso(utcnow())))


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_operator(row) -> OperatorAccount:
    return OperatorAccount(
        id=row.id,
        email=row.email,
        secret_hash=row.secret_hash,
        display_name=row.display_name,
        role=row.role,
        active=bool(row.is_active),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
