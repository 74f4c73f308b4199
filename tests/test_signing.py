import json
import pathlib
import subprocess

import pytest
import yaml

from pactum.contract import load_contract
from pactum.errors import SignatureVerificationError, SigningError
from pactum.signing import (
    Ed25519Gateway,
    KeybaseGateway,
    SigningGateway,
    generate_ed25519_jwk,
    load_ed25519_key,
    private_key_from_jwk,
    public_key_from_did,
    sign_contract,
    verify_contract,
)


def _write_jwk(tmp_path: pathlib.Path, name: str) -> tuple[pathlib.Path, str]:
    """Write a private Ed25519 JWK to disk and return (path, did)."""
    jwk = generate_ed25519_jwk(kid=name)
    _priv, did = private_key_from_jwk(jwk)
    p = tmp_path / f"{name}.jwk.json"
    p.write_text(json.dumps(jwk, indent=2) + "\n", encoding="utf-8")
    return p, did


def _contract(tmp_path: pathlib.Path, client_signer: str, supplier_signer: str) -> pathlib.Path:
    record = {
        "template": {"source": "./nda.md"},
        "counterparties": ["client", "supplier"],
        "client": {"full_name": "Company XYZ", "signatories": ["client_sig01"]},
        "client_sig01": {"full_names": "Client Sig01", "signer_id": client_signer},
        "supplier": {"full_name": "ABC Limited", "signatories": ["supplier_sig01"]},
        "supplier_sig01": {"full_names": "Supplier Sig01", "signer_id": supplier_signer},
    }
    path = tmp_path / "contract.yaml"
    path.write_text(yaml.safe_dump(record, sort_keys=False), encoding="utf-8")
    return path


def test_did_key_round_trip():
    jwk = generate_ed25519_jwk()
    priv, did = private_key_from_jwk(jwk)
    assert did.startswith("did:key:z")
    pub = public_key_from_did(did)
    sig = priv.sign(b"payload")
    pub.verify(sig, b"payload")


def test_ed25519_sign_and_verify_all(tmp_path):
    client_key, client_did = _write_jwk(tmp_path, "client")
    supplier_key, supplier_did = _write_jwk(tmp_path, "supplier")
    contract = load_contract(_contract(tmp_path, client_did, supplier_did))
    gw = Ed25519Gateway()

    rec = sign_contract(contract, "client", "client_sig01", gw, str(client_key))
    assert rec.filename == tmp_path / "client__client_sig01.sig"
    assert rec.expected_signer_identity == client_did
    assert contract.contract_hash is not None
    sign_contract(contract, "supplier", "supplier_sig01", gw, str(supplier_key))

    records = verify_contract(contract, gw)
    assert [(r.counterparty_id, r.signatory_id) for r in records] == [
        ("client", "client_sig01"),
        ("supplier", "supplier_sig01"),
    ]


def test_one_missing_signature_is_exactly_one_error(tmp_path):
    client_key, client_did = _write_jwk(tmp_path, "client")
    _supplier_key, supplier_did = _write_jwk(tmp_path, "supplier")
    contract = load_contract(_contract(tmp_path, client_did, supplier_did))
    gw = Ed25519Gateway()
    sign_contract(contract, "client", "client_sig01", gw, str(client_key))

    with pytest.raises(SignatureVerificationError) as ei:
        verify_contract(contract, gw)
    assert len(ei.value.errors) == 1
    assert "supplier_sig01" in ei.value.errors[0]
    assert "missing signature file" in ei.value.errors[0]


def test_all_problems_reported_in_one_run(tmp_path):
    client_key, client_did = _write_jwk(tmp_path, "client")
    contract = load_contract(_contract(tmp_path, client_did, ""))
    gw = Ed25519Gateway()
    sign_contract(contract, "client", "client_sig01", gw, str(client_key))
    contract.raw_bytes = contract.raw_bytes + b"# edited after signing\n"

    with pytest.raises(SignatureVerificationError) as ei:
        verify_contract(contract, gw)
    errors = ei.value.errors
    assert any("client_sig01" in e and "content hash" in e for e in errors)
    assert any("supplier_sig01" in e and "no signer identity" in e for e in errors)
    assert any("supplier_sig01" in e and "missing signature file" in e for e in errors)


def test_wrong_signer_is_rejected(tmp_path):
    client_key, _client_did = _write_jwk(tmp_path, "client")
    _other_key, other_did = _write_jwk(tmp_path, "other")
    _supplier_key, supplier_did = _write_jwk(tmp_path, "supplier")
    contract = load_contract(_contract(tmp_path, other_did, supplier_did))
    gw = Ed25519Gateway()
    sign_contract(contract, "client", "client_sig01", gw, str(client_key))

    with pytest.raises(SignatureVerificationError) as ei:
        gw.verify(contract.filename, tmp_path / "client__client_sig01.sig", other_did)
    assert "expected" in ei.value.errors[0]


def test_tampered_signature_is_rejected(tmp_path):
    key, did = _write_jwk(tmp_path, "k")
    content = tmp_path / "doc"
    content.write_bytes(b"agreement")
    sig = tmp_path / "doc.sig"
    gw = Ed25519Gateway()
    gw.sign(content, sig, str(key))

    other_key, _ = _write_jwk(tmp_path, "other")
    forged = tmp_path / "forged.sig"
    gw.sign(content, forged, str(other_key))
    obj = json.loads(sig.read_text(encoding="utf-8"))
    obj["jws"] = json.loads(forged.read_text(encoding="utf-8"))["jws"]
    sig.write_text(json.dumps(obj), encoding="utf-8")

    with pytest.raises(SignatureVerificationError) as ei:
        gw.verify(content, sig, did)
    assert "invalid signature" in ei.value.errors[0]


class _RecordingGateway(SigningGateway):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.seen = []

    def sign(self, content_file, signature_file, signer_key_id=None):
        self.seen.append((pathlib.Path(content_file), pathlib.Path(content_file).read_bytes()))
        if self.fail:
            raise SigningError("boom")
        pathlib.Path(signature_file).write_text("sig", encoding="utf-8")


def test_sign_uses_exact_bytes_and_cleans_up_scratch(tmp_path):
    contract = load_contract(_contract(tmp_path, "a", "b"))
    gw = _RecordingGateway()
    sign_contract(contract, "client", "client_sig01", gw)
    scratch, data = gw.seen[0]
    assert data == contract.raw_bytes
    assert not scratch.exists()
    assert (tmp_path / "client__client_sig01.sig").read_text(encoding="utf-8") == "sig"


def test_failed_sign_cleans_up_and_places_nothing(tmp_path):
    contract = load_contract(_contract(tmp_path, "a", "b"))
    gw = _RecordingGateway(fail=True)
    with pytest.raises(SigningError):
        sign_contract(contract, "client", "client_sig01", gw)
    assert not gw.seen[0][0].exists()
    assert not (tmp_path / "client__client_sig01.sig").exists()


def test_keybase_argv(tmp_path, monkeypatch):
    calls = []

    def fake_run(cmd, capture_output=False, text=False, check=False):
        calls.append(list(cmd))
        if cmd[2] == "sign":
            pathlib.Path(cmd[cmd.index("-o") + 1]).write_text("pgp", encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    gw = KeybaseGateway("keybase")
    content, sig = tmp_path / "c.yaml", tmp_path / "c.sig"
    content.write_text("x", encoding="utf-8")

    gw.sign(content, sig, "KEYID")
    gw.verify(content, sig, "alice")
    assert calls[0] == ["keybase", "pgp", "sign", "-d", "-i", str(content), "-o", str(sig), "-k", "KEYID"]
    assert calls[1] == ["keybase", "pgp", "verify", "-d", str(sig), "-i", str(content), "-S", "alice"]


def test_keybase_failures(tmp_path, monkeypatch):
    def fake_run(cmd, capture_output=False, text=False, check=False):
        return subprocess.CompletedProcess(cmd, 1, "", "ERROR wrong signer")

    monkeypatch.setattr(subprocess, "run", fake_run)
    gw = KeybaseGateway()
    with pytest.raises(SigningError):
        gw.sign(tmp_path / "c", tmp_path / "c.sig")
    with pytest.raises(SignatureVerificationError) as ei:
        gw.verify(tmp_path / "c", tmp_path / "c.sig", "alice")
    assert "wrong signer" in ei.value.errors[0]


def test_did_is_stable_for_a_key(tmp_path):
    path, did = _write_jwk(tmp_path, "alice")
    _priv, again = load_ed25519_key(path)
    assert again == did


def test_inconsistent_or_foreign_keys_are_rejected(tmp_path):
    jwk = generate_ed25519_jwk()
    other = generate_ed25519_jwk()
    with pytest.raises(ValueError):
        private_key_from_jwk(dict(jwk, x=other["x"]))
    with pytest.raises(ValueError):
        private_key_from_jwk({"kty": "EC", "crv": "P-256", "d": "AA"})
    with pytest.raises(ValueError):
        public_key_from_did("did:web:example.com")

    bad = tmp_path / "bad.jwk.json"
    bad.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(SigningError):
        load_ed25519_key(bad)
