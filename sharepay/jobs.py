"""Settlement job messages: build, sign and validate at the queue boundary.

A job is a signed envelope::

    {
      "object_type": "settlement_job",
      "object_version": "0.1",
      "object_id": "<uuid job id>",
      "created_at": "<RFC3339>",
      "payload": {"worker_id": 7, "amount": 5000},
      "signer": {"algo": "ed25519", "pubkey": "<base64>"},
      "signature": "<base64 ed25519 over the JCS form without signature>"
    }

The dispatcher signs every job it enqueues; settlement workers refuse
messages that fail structure, payload or signature checks, so nothing
written to the queue table by hand can move funds.
"""

from __future__ import annotations

import base64
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import jcs
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import CanonicalizationError, IdentityError, JobError, SignatureError
from .types import JobEnvelope, JobPayload

JOB_OBJECT_TYPE = "settlement_job"
JOB_VERSION = "0.1"
_BASE64_STANDARD_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")
_REQUIRED_FIELDS = frozenset({
    "object_type", "object_version", "object_id",
    "created_at", "payload", "signer", "signature",
})


def canonicalize(obj: dict) -> bytes:
    """RFC 8785 canonical JSON as UTF-8 bytes."""
    if not isinstance(obj, dict):
        raise CanonicalizationError("Input must be a JSON object (dict)")
    try:
        return jcs.canonicalize(obj)
    except Exception as e:
        raise CanonicalizationError(f"Canonicalization failed: {e}") from e


class DispatcherIdentity:
    """The ed25519 key a dispatcher signs settlement jobs with."""

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key

    @classmethod
    def generate(cls) -> "DispatcherIdentity":
        return cls(SigningKey.generate())

    @classmethod
    def load(cls, path: str) -> "DispatcherIdentity":
        """Load a raw 32-byte ed25519 seed from *path*."""
        p = Path(path)
        if not p.exists():
            raise IdentityError(f"Identity file not found: {path}")
        raw = p.read_bytes()
        if len(raw) != 32:
            raise IdentityError(f"Invalid key file: expected 32 bytes, got {len(raw)}")
        return cls(SigningKey(raw))

    @classmethod
    def load_or_create(cls, path: str) -> "DispatcherIdentity":
        """Load *path*, generating and saving a fresh key if it is missing."""
        p = Path(path)
        if p.exists():
            return cls.load(path)
        identity = cls.generate()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(bytes(identity._signing_key))
        p.chmod(0o600)
        return identity

    @property
    def public_key_base64(self) -> str:
        return base64.b64encode(bytes(self._signing_key.verify_key)).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature


def _b64_field(value, field_name: str, size: int) -> bytes:
    if not isinstance(value, str):
        raise JobError(f"{field_name} must be a string")
    if "-" in value or "_" in value:
        raise JobError(f"{field_name} uses URL-safe base64; standard base64 required")
    if not _BASE64_STANDARD_RE.match(value):
        raise JobError(f"{field_name} is not valid base64")
    try:
        raw = base64.b64decode(value)
    except ValueError as e:
        raise JobError(f"{field_name} base64 decode failed: {e}") from e
    if len(raw) != size:
        raise JobError(f"{field_name} must decode to {size} bytes, got {len(raw)}")
    return raw


def _positive_int(payload: dict, key: str) -> int:
    value = payload.get(key)
    # bool is an int subclass; reject it explicitly
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise JobError(f"payload.{key} must be a positive integer")
    return value


def validate_job(envelope: dict) -> JobPayload:
    """Check envelope structure and payload schema. Returns the payload.

    Raises:
        JobError: On any structural or schema violation.
    """
    if not isinstance(envelope, dict):
        raise JobError("job must be a JSON object")
    missing = _REQUIRED_FIELDS - set(envelope.keys())
    if missing:
        raise JobError(f"Missing job fields: {sorted(missing)}")
    extra = set(envelope.keys()) - _REQUIRED_FIELDS
    if extra:
        raise JobError(f"Unexpected job fields: {sorted(extra)}")

    if envelope["object_type"] != JOB_OBJECT_TYPE:
        raise JobError(f"Invalid object_type: {envelope['object_type']}")
    if envelope["object_version"] != JOB_VERSION:
        raise JobError(f"Unsupported object_version: {envelope['object_version']}")
    if not isinstance(envelope["object_id"], str) or not envelope["object_id"]:
        raise JobError("object_id must be a non-empty string")
    if not isinstance(envelope["created_at"], str):
        raise JobError("created_at must be a string")
    try:
        datetime.fromisoformat(envelope["created_at"].replace("Z", "+00:00"))
    except ValueError as e:
        raise JobError(f"Invalid RFC3339 timestamp: {e}") from e

    payload = envelope["payload"]
    if not isinstance(payload, dict):
        raise JobError("payload must be a JSON object")
    if set(payload.keys()) != {"worker_id", "amount"}:
        raise JobError(f"payload must have exactly worker_id and amount, got {sorted(payload)}")
    worker_id = _positive_int(payload, "worker_id")
    amount = _positive_int(payload, "amount")

    signer = envelope["signer"]
    if not isinstance(signer, dict) or set(signer.keys()) != {"algo", "pubkey"}:
        raise JobError("signer must be an object with algo and pubkey")
    if signer["algo"] != "ed25519":
        raise JobError(f"Unsupported signer algorithm: {signer['algo']}")
    _b64_field(signer["pubkey"], "signer.pubkey", 32)
    _b64_field(envelope["signature"], "signature", 64)

    return JobPayload(worker_id=worker_id, amount=amount)


def build_job(
    worker_id: int,
    amount: int,
    identity: DispatcherIdentity,
    job_id: str | None = None,
) -> JobEnvelope:
    """Build and sign a settlement job for *amount* locked on *worker_id*."""
    payload = {"worker_id": worker_id, "amount": amount}
    _positive_int(payload, "worker_id")
    _positive_int(payload, "amount")
    envelope = {
        "object_type": JOB_OBJECT_TYPE,
        "object_version": JOB_VERSION,
        "object_id": job_id or str(uuid.uuid4()),
        "created_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "payload": payload,
        "signer": {"algo": "ed25519", "pubkey": identity.public_key_base64},
    }
    sig = identity.sign(canonicalize(envelope))
    envelope["signature"] = base64.b64encode(sig).decode("ascii")
    return envelope  # type: ignore[return-value]


def verify_job(envelope: dict, trusted_signers: Iterable[str] | None = None) -> JobPayload:
    """Validate a job and its signature. Returns the payload.

    Args:
        envelope: The decoded job message.
        trusted_signers: Base64 public keys allowed to sign jobs. When
            empty or omitted any well-formed signature is accepted.

    Raises:
        JobError: On structural violations or an untrusted signer.
        SignatureError: On signature verification failure.
    """
    payload = validate_job(envelope)

    trusted = set(trusted_signers or ())
    pubkey_b64 = envelope["signer"]["pubkey"]
    if trusted and pubkey_b64 not in trusted:
        raise JobError(f"job signed by untrusted key {pubkey_b64}")

    preimage = canonicalize({k: v for k, v in envelope.items() if k != "signature"})
    try:
        VerifyKey(base64.b64decode(pubkey_b64)).verify(
            preimage, base64.b64decode(envelope["signature"])
        )
    except BadSignatureError as e:
        raise SignatureError(f"Job signature verification failed: {e}") from e
    return payload
