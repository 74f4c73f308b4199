"""pactum command line.

    python -m pactum location 'git+ssh://git@github.com:acme/templates.git/nda.md#v1'
    python -m pactum template fetch https://example.com/nda.md
    python -m pactum contract check contract.yaml
    python -m pactum sign contract.yaml --counterparty client --signatory client_sig01
    python -m pactum verify contract.yaml

Every command prints ``ERROR: <message>`` to stderr and returns 2 on failure.
``verify`` returns 1 when signatures do not check out.
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from typing import Any, Dict, List, Optional, Sequence

from pactum import __version__
from pactum.cache import ContentCache
from pactum.compiler import DocumentCompiler
from pactum.config import PactumConfig, load_config
from pactum.contract import (
    Counterparty,
    Signatory,
    load_contract,
    load_contract_with_template,
    new_contract_record,
    update_template_hash,
    write_contract_record,
)
from pactum.core import load_structured
from pactum.errors import ConfigError, PactumError, SignatureVerificationError
from pactum.integrity import file_hash
from pactum.location import parse
from pactum.signing import (
    Ed25519Gateway,
    KeybaseGateway,
    SigningGateway,
    generate_ed25519_jwk,
    private_key_from_jwk,
    sign_contract,
    signature_records,
    verify_contract,
)
from pactum.templates import LoadOptions, TemplateFormat, TemplateResolver

SIGNING_BACKENDS = ("keybase", "ed25519")


def _error(msg: Any) -> int:
    print(f"ERROR: {msg}", file=sys.stderr)
    return 2


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False))


def _config(args: argparse.Namespace) -> PactumConfig:
    cfg = getattr(args, "pactum_config", None)
    if cfg is None:
        cfg = load_config(getattr(args, "config", None) or None)
        args.pactum_config = cfg
    return cfg


def _resolver(args: argparse.Namespace) -> TemplateResolver:
    return TemplateResolver.from_config(_config(args))


def _gateway(args: argparse.Namespace) -> SigningGateway:
    backend = getattr(args, "backend", "keybase") or "keybase"
    if backend == "ed25519":
        return Ed25519Gateway()
    return KeybaseGateway(_config(args).tools.keybase.get())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_location(args: argparse.Namespace) -> int:
    """Parse a location and show its parts."""
    try:
        loc = parse(args.location)
    except PactumError as ex:
        return _error(ex)
    info = loc.to_dict()
    info["clone_url"] = loc.clone_url() if loc.is_repository else ""
    if getattr(args, "json", False):
        _print_json(info)
        return 0
    for key in ("protocol_stack", "user", "host", "port", "path", "ref",
                "repository_identity", "inner_path", "clone_url"):
        value = info[key]
        if isinstance(value, list):
            value = "+".join(value)
        print(f"{key}: {value}")
    return 0


def cmd_hash(args: argparse.Namespace) -> int:
    path = pathlib.Path(args.file)
    if not path.is_file():
        return _error(f"file not found: {path}")
    print(file_hash(path))
    return 0


def cmd_template_fetch(args: argparse.Namespace) -> int:
    try:
        opts = LoadOptions(
            expected_content_hash=getattr(args, "hash", "") or None,
            format=TemplateFormat.parse(args.format) if getattr(args, "format", "") else None,
            refresh=bool(getattr(args, "refresh", False)),
        )
        template = _resolver(args).load(args.source, opts)
    except PactumError as ex:
        return _error(ex)

    out = getattr(args, "out", "") or ""
    if out:
        out_path = pathlib.Path(out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(template.raw)
    if getattr(args, "json", False):
        _print_json(template.to_dict())
    else:
        print(f"{template.content_hash}  {template.source}")
    return 0


def cmd_template_vars(args: argparse.Namespace) -> int:
    try:
        delimiters = tuple(args.delimiters) if getattr(args, "delimiters", None) else None
        opts = LoadOptions(
            format=TemplateFormat.parse(args.format) if getattr(args, "format", "") else None,
            delimiters=delimiters,
        )
        template = _resolver(args).load(args.source, opts)
        variables = template.variables()
    except PactumError as ex:
        return _error(ex)
    _print_json(variables)
    return 0


def cmd_contract_check(args: argparse.Namespace) -> int:
    """Load a contract and resolve its template against the pinned hash."""
    try:
        contract = load_contract_with_template(pathlib.Path(args.file), _resolver(args))
        template = contract.template
    except PactumError as ex:
        return _error(ex)
    out = {
        "contract": str(contract.filename),
        "contract_hash": contract.compute_hash(),
        "template": template.to_dict(),
        "counterparties": [cp.id for cp in contract.sorted_counterparties()],
    }
    if getattr(args, "json", False):
        _print_json(out)
    else:
        print(f"OK: {contract.filename} ({out['contract_hash']})")
        print(f"template: {template.source} ({template.content_hash})")
    return 0


def cmd_contract_update(args: argparse.Namespace) -> int:
    try:
        old, new = update_template_hash(pathlib.Path(args.file), _resolver(args))
    except PactumError as ex:
        return _error(ex)
    if old == new:
        print(f"template hash unchanged: {new}")
    else:
        print(f"template hash updated: {old or '(unset)'} -> {new}")
    return 0


def cmd_contract_signatories(args: argparse.Namespace) -> int:
    """List every signatory with its expected signer and whether its signature file exists."""
    try:
        contract = load_contract(pathlib.Path(args.file))
    except PactumError as ex:
        return _error(ex)
    rows: List[Dict[str, Any]] = []
    for rec in signature_records(contract):
        sig = contract.signatory(rec.counterparty_id, rec.signatory_id)
        rows.append(dict(rec.to_dict(), full_names=sig.full_names, signed=rec.filename.is_file()))
    if getattr(args, "json", False):
        _print_json(rows)
        return 0
    for r in rows:
        status = "signed" if r["signed"] else "unsigned"
        print(f"{r['counterparty_id']}/{r['signatory_id']}  {r['full_names']}  {r['expected_signer_identity'] or '-'}  {status}")
    return 0


def _counterparties_from_file(path: pathlib.Path) -> List[Counterparty]:
    data = load_structured(path)
    if not isinstance(data, list):
        raise ConfigError(f"counterparties file must contain a list: {path}")
    out: List[Counterparty] = []
    for item in data:
        sigs = {
            s["id"]: Signatory(id=s["id"], full_names=s["full_names"], signer_id=s.get("signer_id"))
            for s in item.get("signatories", [])
        }
        out.append(Counterparty(id=item["id"], full_name=item["full_name"], signatories=sigs))
    return out


def cmd_contract_new(args: argparse.Namespace) -> int:
    """Scaffold a contract file pinned to a template."""
    path = pathlib.Path(args.file)
    if path.exists() and not getattr(args, "force", False):
        return _error(f"refusing to overwrite existing file: {path} (use --force)")
    try:
        opts = LoadOptions(
            format=TemplateFormat.parse(args.format) if getattr(args, "format", "") else None,
            base_dir=path.resolve().parent,
        )
        template = _resolver(args).load(args.template, opts)
        cps_file = getattr(args, "counterparties", "") or ""
        counterparties = _counterparties_from_file(pathlib.Path(cps_file)) if cps_file else []
        record = new_contract_record(template, counterparties)
        write_contract_record(path, record)
    except (PactumError, KeyError, ValueError) as ex:
        return _error(ex)
    print(str(path))
    return 0


def cmd_sign(args: argparse.Namespace) -> int:
    try:
        contract = load_contract_with_template(pathlib.Path(args.file), _resolver(args))
        rec = sign_contract(
            contract,
            args.counterparty,
            args.signatory,
            _gateway(args),
            key_id=getattr(args, "key", "") or None,
        )
    except PactumError as ex:
        return _error(ex)
    print(str(rec.filename))
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    try:
        contract = load_contract_with_template(pathlib.Path(args.file), _resolver(args))
        records = verify_contract(contract, _gateway(args))
    except SignatureVerificationError as ex:
        print(f"FAIL: {len(ex.errors)} problem(s) in {args.file}", file=sys.stderr)
        for e in ex.errors:
            print(f"  - {e}", file=sys.stderr)
        return 1
    except PactumError as ex:
        return _error(ex)
    if getattr(args, "json", False):
        _print_json({"contract_hash": contract.contract_hash, "signatures": [r.to_dict() for r in records]})
    else:
        print(f"OK: {len(records)} signature(s) verified for {contract.filename}")
    return 0


def cmd_cache_list(args: argparse.Namespace) -> int:
    try:
        cache = ContentCache(_config(args).templates_cache_dir)
    except PactumError as ex:
        return _error(ex)
    rows: List[Dict[str, Any]] = [
        dict(e.to_index(), source=e.source_key) for e in cache.entries()
    ]
    if getattr(args, "json", False):
        _print_json(rows)
        return 0
    for r in rows:
        print(f"{r['hash']}  {r['lastUpdated']}  {r['source']}")
    return 0


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate an Ed25519 OKP JWK for the ed25519 signing backend."""
    out_path = pathlib.Path(args.out)
    if out_path.exists() and not getattr(args, "force", False):
        return _error(f"refusing to overwrite existing key: {out_path} (use --force)")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    jwk = generate_ed25519_jwk(kid=getattr(args, "kid", "key-1") or "key-1")
    out_path.write_text(json.dumps(jwk, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")

    pub_out = getattr(args, "public_out", "") or ""
    if pub_out:
        pub_path = pathlib.Path(pub_out)
        pub_path.parent.mkdir(parents=True, exist_ok=True)
        pub_path.write_text(json.dumps({k: v for k, v in jwk.items() if k != "d"}, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")

    _priv, did = private_key_from_jwk(jwk)
    print(did)
    return 0


def cmd_compile(args: argparse.Namespace) -> int:
    src = pathlib.Path(args.rendered)
    if not src.is_file():
        return _error(f"file not found: {src}")
    try:
        out = DocumentCompiler.from_config(_config(args)).compile(src.read_bytes(), args.out)
    except PactumError as ex:
        return _error(ex)
    print(str(out))
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="pactum", description="Versionable legal contracts")
    ap.add_argument("--version", action="version", version=f"pactum {__version__}")
    ap.add_argument("--config", default="", help="Path to a YAML config file")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    loc = sub.add_parser("location", help="Parse a template location")
    loc.add_argument("location")
    loc.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    loc.set_defaults(func=cmd_location)

    h = sub.add_parser("hash", help="Content hash of a file")
    h.add_argument("file")
    h.set_defaults(func=cmd_hash)

    tpl = sub.add_parser("template", help="Template operations")
    tpl_sub = tpl.add_subparsers(dest="template_cmd", required=True)

    tf = tpl_sub.add_parser("fetch", help="Resolve a template (local, URL or repository)")
    tf.add_argument("source")
    tf.add_argument("--hash", default="", help="Expected content hash (fail on mismatch)")
    tf.add_argument("--format", default="", choices=["", "mustache", "handlebars"])
    tf.add_argument("--refresh", action="store_true", help="Bypass the cache lookup")
    tf.add_argument("--out", default="", help="Write the template content here")
    tf.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    tf.set_defaults(func=cmd_template_fetch)

    tv = tpl_sub.add_parser("vars", help="List the variables a template uses")
    tv.add_argument("source")
    tv.add_argument("--format", default="", choices=["", "mustache", "handlebars"])
    tv.add_argument("--delimiters", nargs=2, metavar=("OPEN", "CLOSE"), help="Custom Mustache delimiters")
    tv.set_defaults(func=cmd_template_vars)

    con = sub.add_parser("contract", help="Contract operations")
    con_sub = con.add_subparsers(dest="contract_cmd", required=True)

    cc = con_sub.add_parser("check", help="Parse a contract and verify its template hash")
    cc.add_argument("file")
    cc.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    cc.set_defaults(func=cmd_contract_check)

    cu = con_sub.add_parser("update", help="Pin the template's current hash")
    cu.add_argument("file")
    cu.set_defaults(func=cmd_contract_update)

    cs = con_sub.add_parser("signatories", help="List signatories and their signature status")
    cs.add_argument("file")
    cs.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    cs.set_defaults(func=cmd_contract_signatories)

    cn = con_sub.add_parser("new", help="Scaffold a contract from a template")
    cn.add_argument("file")
    cn.add_argument("--template", required=True, help="Template source (local paths are relative to the contract file)")
    cn.add_argument("--format", default="", choices=["", "mustache", "handlebars"])
    cn.add_argument("--counterparties", default="", help="YAML/JSON list of counterparties")
    cn.add_argument("--force", action="store_true")
    cn.set_defaults(func=cmd_contract_new)

    s = sub.add_parser("sign", help="Sign a contract as one signatory")
    s.add_argument("file")
    s.add_argument("--counterparty", required=True)
    s.add_argument("--signatory", required=True)
    s.add_argument("--backend", default="keybase", choices=SIGNING_BACKENDS)
    s.add_argument("--key", default="", help="Key id (keybase) or private JWK path (ed25519)")
    s.set_defaults(func=cmd_sign)

    v = sub.add_parser("verify", help="Verify every signature on a contract")
    v.add_argument("file")
    v.add_argument("--backend", default="keybase", choices=SIGNING_BACKENDS)
    v.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    v.set_defaults(func=cmd_verify)

    ca = sub.add_parser("cache", help="Template cache")
    ca_sub = ca.add_subparsers(dest="cache_cmd", required=True)
    cl = ca_sub.add_parser("list", help="List cached templates")
    cl.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    cl.set_defaults(func=cmd_cache_list)

    k = sub.add_parser("keygen", help="Generate an Ed25519 signing key (JWK)")
    k.add_argument("--out", required=True)
    k.add_argument("--kid", default="key-1")
    k.add_argument("--public-out", default="")
    k.add_argument("--force", action="store_true")
    k.set_defaults(func=cmd_keygen)

    cp = sub.add_parser("compile", help="Compile rendered HTML to PDF")
    cp.add_argument("rendered")
    cp.add_argument("--out", required=True)
    cp.set_defaults(func=cmd_compile)

    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = _config(args)
    except ConfigError as ex:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
        return _error(ex)
    level = "debug" if args.verbose else cfg.logging.level.get()
    logging.basicConfig(level=getattr(logging, level.upper()), format="%(levelname)s %(name)s: %(message)s")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
