import logging
import secrets
import string
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from werkzeug.security import check_password_hash, generate_password_hash

from provisioning.schemas.imports import KEEP_EXISTING, CandidateRow
from provisioning.services.errors import HashingError
from provisioning.services.validation import credential_problem, is_credential_message

logger = logging.getLogger(__name__)

GENERATED_PASSWORD_LENGTH = 12
_SPECIAL_CHARACTERS = "!@#$%^&*"


class CredentialHasher(Protocol):
    def hash(self, secret: str) -> str: ...

    def verify(self, hashed: str, secret: str) -> bool: ...


class WerkzeugCredentialHasher:
    def __init__(self, method: str = "scrypt"):
        self.method = method

    def hash(self, secret: str) -> str:
        return generate_password_hash(secret, method=self.method)

    def verify(self, hashed: str, secret: str) -> bool:
        return check_password_hash(hashed, secret)


def generate_credential(worker_type: str) -> str:
    """A fresh credential that satisfies the policy for the worker type."""
    if worker_type == "operational":
        return "".join(secrets.choice(string.digits) for _ in range(6))

    alphabet = string.ascii_letters + string.digits + _SPECIAL_CHARACTERS
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(_SPECIAL_CHARACTERS),
    ]
    rest = [secrets.choice(alphabet) for _ in range(GENERATED_PASSWORD_LENGTH - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def repair_credential(row: CandidateRow) -> bool:
    """
    Replace a policy-violating credential in place and drop the matching
    validation messages. Returns True when the row was changed.
    """
    if credential_problem(row.worker_type, row.password, allow_keep=row.action == "update") is None:
        return False
    row.password = generate_credential(row.worker_type)
    row.validation_errors = [m for m in row.validation_errors if not is_credential_message(m)]
    row.credential_regenerated = True
    return True


def needs_hash(row: CandidateRow) -> bool:
    # Operational PINs are stored as-is
    return row.worker_type == "office" and bool(row.password) and row.password != KEEP_EXISTING


class HasherPool:
    """
    Hashes every credential of a chunk concurrently before the chunk is
    written. Hashing is CPU bound and independent per row; the pool is sized
    to the chunk, capped by `max_workers`.
    """

    def __init__(self, hasher: CredentialHasher, max_workers: int = 32):
        self.hasher = hasher
        self.max_workers = max_workers

    def _hash_one(self, secret: str) -> str:
        try:
            return self.hasher.hash(secret)
        except Exception as exc:
            raise HashingError(str(exc) or exc.__class__.__name__) from exc

    def prepare_chunk(self, rows: list[CandidateRow], *, auto_fix: bool) -> list[str | None]:
        """
        Returns one entry per row: the credential hash, or None when the row
        stores no hash (operational PIN, KEEP_EXISTING, missing credential).
        """
        if auto_fix:
            repaired = sum(repair_credential(row) for row in rows)
            if repaired:
                logger.info("Regenerated %s non-compliant credential(s)", repaired)

        hashes: list[str | None] = [None] * len(rows)
        pending = [(i, row.password) for i, row in enumerate(rows) if needs_hash(row)]
        if not pending:
            return hashes

        workers = max(1, min(len(pending), self.max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="credential-hash") as executor:
            results = executor.map(self._hash_one, [secret for _, secret in pending])
            for (i, _), hashed in zip(pending, results):
                hashes[i] = hashed
        return hashes
