"""Detached signatures over contract bytes.

Two gateways share one contract:

- ``sign(content_file, signature_file, signer_key_id)`` writes a detached
  signature or raises SigningError.
- ``verify(content_file, signature_file, expected_signer_identity)`` returns
  nothing and raises SignatureVerificationError on any problem. There is no
  boolean result to forget to check.

:class:`KeybaseGateway` drives the external signing service as a subprocess.
:class:`Ed25519Gateway` signs in-process with an Ed25519 key whose identity is
a ``did:key``.

Signature files sit next to the contract as ``<counterparty>__<signatory>.sig``.
"""

from __future__ import annotations

import base64
import json
import logging
import pathlib
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from pactum.contract import Contract
from pactum.core import now_rfc3339
from pactum.errors import SignatureVerificationError, SigningError
from pactum.integrity import content_hash

logger = logging.getLogger(__name__)

SIGNATURE_TYPE = "PactumEd25519DetachedSignature"


@dataclass(frozen=True)
class SignatureRecord:
    filename: pathlib.Path
    counterparty_id: str
    signatory_id: str
    expected_signer_identity: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": str(self.filename),
            "counterparty_id": self.counterparty_id,
            "signatory_id": self.signatory_id,
            "expected_signer_identity": self.expected_signer_identity,
        }


class SigningGateway:
    def sign(self, content_file: pathlib.Path, signature_file: pathlib.Path, signer_key_id: Optional[str] = None) -> None:
        raise NotImplementedError

    def verify(self, content_file: pathlib.Path, signature_file: pathlib.Path, expected_signer_identity: str) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# External signing service
# ---------------------------------------------------------------------------


class KeybaseGateway(SigningGateway):
    """Signs and verifies with ``keybase pgp``."""

    def __init__(self, executable: str = "keybase"):
        self.executable = executable

    def _run(self, args: Sequence[str]) -> Tuple[int, str, str]:
        cmd = [self.executable, *args]
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            return 127, "", str(exc)
        if proc.stdout:
            logger.debug(f"stdout: {proc.stdout.strip()}")
        if proc.stderr:
            logger.debug(f"stderr: {proc.stderr.strip()}")
        return proc.returncode, proc.stdout or "", proc.stderr or ""

    def sign(self, content_file: pathlib.Path, signature_file: pathlib.Path, signer_key_id: Optional[str] = None) -> None:
        args = ["pgp", "sign", "-d", "-i", str(content_file), "-o", str(signature_file)]
        if signer_key_id:
            args += ["-k", signer_key_id]
        code, out, err = self._run(args)
        if code != 0:
            raise SigningError(
                f"{self.executable} pgp sign exited with status {code}: {(err or out).strip()}"
            )
        if not pathlib.Path(signature_file).is_file():
            raise SigningError(f"{self.executable} pgp sign produced no signature file at {signature_file}")

    def verify(self, content_file: pathlib.Path, signature_file: pathlib.Path, expected_signer_identity: str) -> None:
        args = ["pgp", "verify", "-d", str(signature_file), "-i", str(content_file), "-S", expected_signer_identity]
        code, out, err = self._run(args)
        if code != 0:
            raise SignatureVerificationError([
                f"{pathlib.Path(signature_file).name}: not a valid signature by {expected_signer_identity} "
                f"(exit status {code}): {(err or out).strip()}"
            ])


# ---------------------------------------------------------------------------
# In-process Ed25519 (did:key)
# ---------------------------------------------------------------------------

B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
ED25519_MULTICODEC = b"\xed\x01"
DID_KEY_PREFIX = "did:key:z"


def _b58encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")
    digits = ""
    while num:
        num, rem = divmod(num, 58)
        digits = B58_ALPHABET[rem] + digits
    leading_zeros = len(data) - len(data.lstrip(b"\x00"))
    return B58_ALPHABET[0] * leading_zeros + digits


def _b58decode(text: str) -> bytes:
    num = 0
    for ch in text:
        idx = B58_ALPHABET.find(ch)
        if idx < 0:
            raise ValueError(f"invalid base58 character {ch!r}")
        num = num * 58 + idx
    leading_ones = len(text) - len(text.lstrip(B58_ALPHABET[0]))
    return b"\x00" * leading_ones + num.to_bytes((num.bit_length() + 7) // 8, "big")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _unb64url(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _raw_public_bytes(priv: Ed25519PrivateKey) -> bytes:
    return priv.public_key().public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def did_key_for(priv: Ed25519PrivateKey) -> str:
    """The ``did:key`` identity of an Ed25519 key."""
    return DID_KEY_PREFIX + _b58encode(ED25519_MULTICODEC + _raw_public_bytes(priv))


def public_key_from_did(did: str) -> Ed25519PublicKey:
    did = did.split("#", 1)[0]
    if not did.startswith(DID_KEY_PREFIX):
        raise ValueError(f"not an Ed25519 did:key: {did!r}")
    decoded = _b58decode(did[len(DID_KEY_PREFIX):])
    if not decoded.startswith(ED25519_MULTICODEC) or len(decoded) != len(ED25519_MULTICODEC) + 32:
        raise ValueError(f"not an Ed25519 did:key: {did!r}")
    return Ed25519PublicKey.from_public_bytes(decoded[len(ED25519_MULTICODEC):])


def generate_ed25519_jwk(kid: str = "key-1") -> Dict[str, Any]:
    """A fresh private OKP JWK; drop ``d`` for the public half."""
    priv = Ed25519PrivateKey.generate()
    d = priv.private_bytes(serialization.Encoding.Raw, serialization.PrivateFormat.Raw, serialization.NoEncryption())
    return {"kty": "OKP", "crv": "Ed25519", "kid": kid, "x": _b64url(_raw_public_bytes(priv)), "d": _b64url(d)}


def private_key_from_jwk(jwk: Dict[str, Any]) -> Tuple[Ed25519PrivateKey, str]:
    """Returns (private_key, did:key). Raises ValueError for anything but a consistent Ed25519 JWK."""
    if (jwk.get("kty"), jwk.get("crv")) != ("OKP", "Ed25519") or not jwk.get("d"):
        raise ValueError("expected a private OKP/Ed25519 JWK")
    priv = Ed25519PrivateKey.from_private_bytes(_unb64url(jwk["d"]))
    if jwk.get("x") and _unb64url(jwk["x"]) != _raw_public_bytes(priv):
        raise ValueError("JWK 'x' does not match 'd'")
    return priv, did_key_for(priv)


def load_ed25519_key(path: Union[str, pathlib.Path]) -> Tuple[Ed25519PrivateKey, str]:
    p = pathlib.Path(path)
    try:
        return private_key_from_jwk(json.loads(p.read_text(encoding="utf-8")))
    except (OSError, ValueError, AttributeError) as exc:
        raise SigningError(f"cannot load Ed25519 key from {p}: {exc}") from exc


class Ed25519Gateway(SigningGateway):
    """In-process signatures; ``signer_key_id`` is the path of a private JWK file."""

    def sign(self, content_file: pathlib.Path, signature_file: pathlib.Path, signer_key_id: Optional[str] = None) -> None:
        if not signer_key_id:
            raise SigningError("Ed25519 signing requires a key file")
        priv, did = load_ed25519_key(signer_key_id)
        data = pathlib.Path(content_file).read_bytes()
        obj = {
            "type": SIGNATURE_TYPE,
            "signer": did,
            "content_sha256": content_hash(data),
            "created": now_rfc3339(),
            "jws": _b64url(priv.sign(data)),
        }
        pathlib.Path(signature_file).write_text(json.dumps(obj, indent=2) + "\n", encoding="utf-8")

    def verify(self, content_file: pathlib.Path, signature_file: pathlib.Path, expected_signer_identity: str) -> None:
        name = pathlib.Path(signature_file).name
        try:
            obj = json.loads(pathlib.Path(signature_file).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SignatureVerificationError([f"{name}: unreadable signature file: {exc}"]) from exc
        if not isinstance(obj, dict) or obj.get("type") != SIGNATURE_TYPE:
            raise SignatureVerificationError([f"{name}: not a {SIGNATURE_TYPE} signature"])

        data = pathlib.Path(content_file).read_bytes()
        errors: List[str] = []
        signer = str(obj.get("signer") or "")
        expected = expected_signer_identity.split("#", 1)[0]
        if signer != expected:
            errors.append(f"{name}: signed by {signer or '(unknown)'}, expected {expected}")
        actual_hash = content_hash(data)
        if obj.get("content_sha256") != actual_hash:
            errors.append(
                f"{name}: signed content hash {obj.get('content_sha256')} does not match contract hash {actual_hash}"
            )
        if not errors:
            try:
                public_key_from_did(signer).verify(_unb64url(str(obj.get("jws") or "")), data)
            except InvalidSignature:
                errors.append(f"{name}: invalid signature")
            except ValueError as exc:
                errors.append(f"{name}: {exc}")
        if errors:
            raise SignatureVerificationError(errors)


# ---------------------------------------------------------------------------
# Contract walk
# ---------------------------------------------------------------------------


def sign_contract(
    contract: Contract,
    counterparty_id: str,
    signatory_id: str,
    gateway: SigningGateway,
    key_id: Optional[str] = None,
) -> SignatureRecord:
    """Sign ``contract.raw_bytes`` for one signatory and place the .sig file."""
    signatory = contract.signatory(counterparty_id, signatory_id)
    contract_hash = contract.compute_hash()
    target = contract.signature_path(counterparty_id, signatory_id)

    with tempfile.TemporaryDirectory(prefix="pactum-sign-") as tmp:
        scratch = pathlib.Path(tmp) / contract.filename.name
        scratch.write_bytes(contract.raw_bytes)
        produced = pathlib.Path(tmp) / target.name
        gateway.sign(scratch, produced, key_id)
        if not produced.is_file():
            raise SigningError(f"signing produced no signature file for {counterparty_id}/{signatory_id}")
        shutil.move(str(produced), str(target))

    logger.info(f"Signed {contract.filename} ({contract_hash}) as {counterparty_id}/{signatory_id} -> {target}")
    return SignatureRecord(
        filename=target,
        counterparty_id=counterparty_id,
        signatory_id=signatory_id,
        expected_signer_identity=signatory.signer_id,
    )


def signature_records(contract: Contract) -> List[SignatureRecord]:
    records = []
    for cp_id in sorted(contract.counterparties):
        cp = contract.counterparties[cp_id]
        for sig_id in sorted(cp.signatories):
            records.append(SignatureRecord(
                filename=contract.signature_path(cp_id, sig_id),
                counterparty_id=cp_id,
                signatory_id=sig_id,
                expected_signer_identity=cp.signatories[sig_id].signer_id,
            ))
    return records


def verify_contract(contract: Contract, gateway: SigningGateway) -> List[SignatureRecord]:
    """Verify every signatory's signature, reporting all problems at once."""
    contract_hash = contract.compute_hash()
    records = signature_records(contract)
    errors: List[str] = []

    with tempfile.TemporaryDirectory(prefix="pactum-verify-") as tmp:
        scratch = pathlib.Path(tmp) / contract.filename.name
        scratch.write_bytes(contract.raw_bytes)
        for rec in records:
            who = f"signatory {rec.signatory_id!r} of counterparty {rec.counterparty_id!r}"
            missing = False
            if not rec.expected_signer_identity:
                errors.append(f"{who}: no signer identity recorded (signer_id)")
                missing = True
            if not rec.filename.is_file():
                errors.append(f"{who}: missing signature file {rec.filename.name}")
                missing = True
            if missing:
                continue
            try:
                gateway.verify(scratch, rec.filename, rec.expected_signer_identity)
            except SignatureVerificationError as exc:
                errors.extend(f"{who}: {e}" for e in exc.errors)

    if errors:
        for e in errors:
            logger.error(e)
        raise SignatureVerificationError(errors)
    logger.info(f"All {len(records)} signature(s) on {contract.filename} ({contract_hash}) verified")
    return records
