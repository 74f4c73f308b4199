import hashlib
import json
import pathlib

import yaml

from pactum.cli import main

NDA = "Agreement effective {{effective_date}}.\n\n{{#supplier_terms}}{{duration}} months{{/supplier_terms}}\n"


def _counterparties(tmp_path: pathlib.Path, client_did: str = "", supplier_did: str = "") -> pathlib.Path:
    def sig(sid: str, names: str, did: str):
        d = {"id": sid, "full_names": names}
        if did:
            d["signer_id"] = did
        return d

    cps = [
        {"id": "client", "full_name": "Company XYZ", "signatories": [sig("client_sig01", "Client Sig01", client_did)]},
        {"id": "supplier", "full_name": "ABC Limited", "signatories": [sig("supplier_sig01", "Supplier Sig01", supplier_did)]},
    ]
    p = tmp_path / "parties.yaml"
    p.write_text(yaml.safe_dump(cps), encoding="utf-8")
    return p


def test_location_json(pactum_home, capsys):
    rc = main(["location", "--json", "git://git@github.com:2222:acme/templates.git/nda.md#v1"])
    assert rc == 0
    info = json.loads(capsys.readouterr().out)
    assert info["host"] == "github.com"
    assert info["port"] == "2222"
    assert info["ref"] == "v1"
    assert info["inner_path"] == "nda.md"
    assert info["clone_url"] == "ssh://git@github.com:2222/acme/templates.git"


def test_location_text(pactum_home, capsys):
    assert main(["location", "git+ssh://git@github.com:acme/templates.git/nda.md"]) == 0
    out = capsys.readouterr().out
    assert "protocol_stack: git+ssh" in out
    assert "repository_identity: git+ssh://git@github.com:acme/templates.git" in out


def test_location_malformed(pactum_home, capsys):
    assert main(["location", "github.com:acme/templates.git"]) == 2
    assert capsys.readouterr().err.startswith("ERROR:")


def test_hash(pactum_home, tmp_path, capsys):
    (tmp_path / "nda.md").write_text(NDA, encoding="utf-8")
    assert main(["hash", "nda.md"]) == 0
    assert capsys.readouterr().out.strip() == hashlib.sha256(NDA.encode("utf-8")).hexdigest()
    assert main(["hash", "missing.md"]) == 2


def test_template_fetch_and_vars(pactum_home, tmp_path, capsys):
    (tmp_path / "nda.md").write_text(NDA, encoding="utf-8")
    digest = hashlib.sha256(NDA.encode("utf-8")).hexdigest()

    assert main(["template", "fetch", "nda.md", "--json", "--hash", digest, "--out", "copy/nda.md"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["hash"] == digest
    assert out["format"] == "mustache"
    assert (tmp_path / "copy" / "nda.md").read_text(encoding="utf-8") == NDA

    assert main(["template", "fetch", "nda.md", "--hash", "0" * 64]) == 2
    assert "ERROR:" in capsys.readouterr().err

    assert main(["template", "vars", "nda.md"]) == 0
    assert json.loads(capsys.readouterr().out) == {"effective_date": {}, "supplier_terms": {"duration": {}}}


def test_non_utf8_inputs_are_reported_not_raised(pactum_home, tmp_path, capsys):
    (tmp_path / "scan.md").write_bytes(b"\xff\xfe{{x}}")
    assert main(["template", "vars", "scan.md"]) == 2
    assert capsys.readouterr().err.startswith("ERROR:")

    (tmp_path / "contract.yaml").write_bytes(b"template: \xff\xfe\n")
    assert main(["contract", "check", "contract.yaml"]) == 2
    assert "UTF-8" in capsys.readouterr().err


def test_contract_new_check_update(pactum_home, tmp_path, capsys):
    (tmp_path / "nda.md").write_text(NDA, encoding="utf-8")
    parties = _counterparties(tmp_path)

    assert main(["contract", "new", "contract.yaml", "--template", "nda.md", "--counterparties", str(parties)]) == 0
    record = yaml.safe_load((tmp_path / "contract.yaml").read_text(encoding="utf-8"))
    assert record["template"]["hash"] == hashlib.sha256(NDA.encode("utf-8")).hexdigest()
    assert record["counterparties"] == ["client", "supplier"]
    assert record["effective_date"] == ""
    assert record["supplier_terms"] == {"duration": ""}
    capsys.readouterr()

    assert main(["contract", "new", "contract.yaml", "--template", "nda.md"]) == 2
    assert "--force" in capsys.readouterr().err

    assert main(["contract", "check", "contract.yaml", "--json"]) == 0
    checked = json.loads(capsys.readouterr().out)
    assert checked["counterparties"] == ["supplier", "client"]

    (tmp_path / "nda.md").write_text(NDA + "Amended.\n", encoding="utf-8")
    assert main(["contract", "check", "contract.yaml"]) == 2
    capsys.readouterr()

    assert main(["contract", "update", "contract.yaml"]) == 0
    assert "template hash updated" in capsys.readouterr().out
    assert main(["contract", "check", "contract.yaml"]) == 0
    assert capsys.readouterr().out.startswith("OK:")


def test_keygen_sign_verify_ed25519(pactum_home, tmp_path, capsys):
    assert main(["keygen", "--out", "keys/client.jwk", "--kid", "client", "--public-out", "keys/client.pub.jwk"]) == 0
    client_did = capsys.readouterr().out.strip()
    assert main(["keygen", "--out", "keys/supplier.jwk"]) == 0
    supplier_did = capsys.readouterr().out.strip()
    assert client_did.startswith("did:key:z")
    assert "d" not in json.loads((tmp_path / "keys" / "client.pub.jwk").read_text(encoding="utf-8"))
    assert main(["keygen", "--out", "keys/client.jwk"]) == 2
    capsys.readouterr()

    (tmp_path / "nda.md").write_text(NDA, encoding="utf-8")
    parties = _counterparties(tmp_path, client_did, supplier_did)
    assert main(["contract", "new", "contract.yaml", "--template", "nda.md", "--counterparties", str(parties)]) == 0
    capsys.readouterr()

    sign = ["sign", "contract.yaml", "--backend", "ed25519"]
    assert main(sign + ["--counterparty", "client", "--signatory", "client_sig01", "--key", "keys/client.jwk"]) == 0
    assert capsys.readouterr().out.strip().endswith("client__client_sig01.sig")

    assert main(["contract", "signatories", "contract.yaml", "--json"]) == 0
    rows = json.loads(capsys.readouterr().out)
    assert [(r["counterparty_id"], r["signatory_id"], r["signed"]) for r in rows] == [
        ("client", "client_sig01", True),
        ("supplier", "supplier_sig01", False),
    ]
    assert rows[0]["expected_signer_identity"] == client_did
    assert rows[1]["full_names"] == "Supplier Sig01"
    assert main(["contract", "signatories", "contract.yaml"]) == 0
    assert "supplier/supplier_sig01  Supplier Sig01" in capsys.readouterr().out

    assert main(["verify", "contract.yaml", "--backend", "ed25519"]) == 1
    err = capsys.readouterr().err
    assert err.startswith("FAIL: 1 problem(s)")
    assert "supplier__supplier_sig01.sig" in err

    assert main(sign + ["--counterparty", "supplier", "--signatory", "supplier_sig01", "--key", "keys/supplier.jwk"]) == 0
    capsys.readouterr()
    assert main(["verify", "contract.yaml", "--backend", "ed25519", "--json"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert len(out["signatures"]) == 2
    assert out["contract_hash"] == hashlib.sha256((tmp_path / "contract.yaml").read_bytes()).hexdigest()


def test_sign_unknown_signatory(pactum_home, tmp_path, capsys):
    (tmp_path / "nda.md").write_text(NDA, encoding="utf-8")
    parties = _counterparties(tmp_path)
    assert main(["contract", "new", "contract.yaml", "--template", "nda.md", "--counterparties", str(parties)]) == 0
    capsys.readouterr()
    rc = main(["sign", "contract.yaml", "--backend", "ed25519", "--counterparty", "client", "--signatory", "nobody"])
    assert rc == 2
    assert capsys.readouterr().err.startswith("ERROR:")


def test_cache_list_empty(pactum_home, capsys):
    assert main(["cache", "list", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == []


def test_bad_config_file(pactum_home, tmp_path, capsys):
    (tmp_path / "broken.yaml").write_text("tools: [git]\n", encoding="utf-8")
    assert main(["--config", "broken.yaml", "hash", "x"]) == 2
    assert capsys.readouterr().err.startswith("ERROR:")
