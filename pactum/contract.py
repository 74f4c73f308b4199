"""Contract records.

A contract file (YAML, JSON or read-only TOML) holds a template reference, a
list of counterparty ids, one section per counterparty and per signatory, and
free-form parameters for the template::

    format_version: "1"
    template:
      source: git+ssh://git@github.com:acme/templates.git/nda.md#v1.0.0
      format: mustache
      hash: 9f2c...
    counterparties: [client, supplier]
    client:
      full_name: Company XYZ
      signatories: [client_sig01]
    client_sig01:
      full_names: Jane Doe
      signer_id: jdoe
    effective_date: 1 January 2020

The contract hash is computed over the exact file bytes. The template's own
hash is pinned inside the record and checked when the template is loaded.
"""

from __future__ import annotations

import json
import logging
import pathlib
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from pactum.core import atomic_write_text
from pactum.errors import (
    ContractFormatError,
    ContractMissingFieldError,
    CounterpartyMissingFieldError,
    SignatoryMissingFieldError,
)
from pactum.integrity import HASH_FORMAT_VERSION, content_hash
from pactum.schema import validate_contract_record
from pactum.templates import LoadOptions, Template, TemplateFormat, TemplateResolver

logger = logging.getLogger(__name__)

RESERVED_KEYS = ("format_version", "template", "counterparties")
WRITABLE_SUFFIXES = (".yaml", ".yml", ".json")
READABLE_SUFFIXES = WRITABLE_SUFFIXES + (".toml",)


@dataclass
class Signatory:
    id: str
    full_names: str
    signer_id: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"full_names": self.full_names}
        if self.signer_id:
            d["signer_id"] = self.signer_id
        return d


@dataclass
class Counterparty:
    id: str
    full_name: str
    signatories: Dict[str, Signatory] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {"full_name": self.full_name, "signatories": list(self.signatories)}


@dataclass(frozen=True)
class TemplateRef:
    """The ``template`` section of a contract record."""
    source: str
    format: Optional[TemplateFormat] = None
    hash: Optional[str] = None
    delimiters: Optional[Tuple[str, str]] = None


class Contract:
    """A parsed contract file and, once resolved, its template."""

    def __init__(
        self,
        filename: pathlib.Path,
        raw_bytes: bytes,
        template_ref: TemplateRef,
        counterparties: Dict[str, Counterparty],
        params: Dict[str, Any],
        record: Dict[str, Any],
    ):
        self.filename = pathlib.Path(filename)
        self._raw_bytes = raw_bytes
        self.template_ref = template_ref
        self.counterparties = counterparties
        self.params = params
        self.record = record
        self.template: Optional[Template] = None
        self.contract_hash: Optional[str] = None

    @property
    def raw_bytes(self) -> bytes:
        return self._raw_bytes

    @raw_bytes.setter
    def raw_bytes(self, value: bytes) -> None:
        self._raw_bytes = value
        self.contract_hash = None

    @property
    def directory(self) -> pathlib.Path:
        return self.filename.resolve().parent

    def compute_hash(self) -> str:
        self.contract_hash = content_hash(self._raw_bytes)
        return self.contract_hash

    def sorted_counterparties(self) -> List[Counterparty]:
        return sorted(self.counterparties.values(), key=lambda c: c.full_name)

    def signature_path(self, counterparty_id: str, signatory_id: str) -> pathlib.Path:
        return self.directory / f"{counterparty_id}__{signatory_id}.sig"

    def signatory(self, counterparty_id: str, signatory_id: str) -> Signatory:
        cp = self.counterparties.get(counterparty_id)
        if cp is None:
            raise ContractFormatError(f'No such counterparty in contract: "{counterparty_id}"')
        sig = cp.signatories.get(signatory_id)
        if sig is None:
            raise ContractFormatError(
                f'Counterparty "{counterparty_id}" has no signatory "{signatory_id}"'
            )
        return sig

    def load_options(self, verify: bool = True) -> LoadOptions:
        return LoadOptions(
            expected_content_hash=self.template_ref.hash if verify else None,
            format=self.template_ref.format,
            delimiters=self.template_ref.delimiters,
            base_dir=self.directory,
        )

    def resolve_template(self, resolver: TemplateResolver) -> Template:
        """Load the template, failing closed if it differs from the pinned hash."""
        if not self.template_ref.hash:
            logger.warning(f"{self.filename}: template.hash is not set; template integrity is not checked")
        self.template = resolver.load(self.template_ref.source, self.load_options())
        return self.template


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def decode_record(raw: bytes, suffix: str) -> Dict[str, Any]:
    suffix = suffix.lower()
    if suffix not in READABLE_SUFFIXES:
        raise ContractFormatError(
            f"unsupported contract file type {suffix!r}; expected one of {', '.join(READABLE_SUFFIXES)}"
        )
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ContractFormatError(f"contract is not valid UTF-8: {e}") from e
    try:
        if suffix == ".toml":
            data = tomllib.loads(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ContractFormatError(f"cannot parse contract ({suffix}): {e}") from e
    if not isinstance(data, dict):
        raise ContractFormatError("contract must be a mapping at the top level")
    return data


def _section(record: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    v = record.get(key)
    return v if isinstance(v, dict) else None


def parse_record(record: Dict[str, Any]) -> Tuple[TemplateRef, Dict[str, Counterparty], Dict[str, Any]]:
    """Split a decoded record into its template reference, counterparties and params."""
    template = _section(record, "template")
    if template is None:
        raise ContractMissingFieldError("template")
    if not template.get("source"):
        raise ContractMissingFieldError("template.source")
    if "counterparties" not in record:
        raise ContractMissingFieldError("counterparties")

    problems = validate_contract_record(record)
    if problems:
        raise ContractFormatError("invalid contract: " + "; ".join(problems))

    counterparties: Dict[str, Counterparty] = {}
    section_ids = set()
    for cp_id in record["counterparties"]:
        cp_sec = _section(record, cp_id)
        if cp_sec is None:
            raise ContractMissingFieldError(cp_id)
        if not cp_sec.get("full_name"):
            raise CounterpartyMissingFieldError(cp_id, "full_name")
        sig_ids = cp_sec.get("signatories")
        if not isinstance(sig_ids, list) or not sig_ids:
            raise CounterpartyMissingFieldError(cp_id, "signatories")
        signatories: Dict[str, Signatory] = {}
        for sig_id in sig_ids:
            sig_sec = _section(record, sig_id)
            if sig_sec is None:
                raise SignatoryMissingFieldError(cp_id, sig_id, sig_id)
            if not sig_sec.get("full_names"):
                raise SignatoryMissingFieldError(cp_id, sig_id, "full_names")
            signatories[sig_id] = Signatory(
                id=sig_id,
                full_names=sig_sec["full_names"],
                signer_id=sig_sec.get("signer_id") or sig_sec.get("keybase_id"),
            )
            section_ids.add(sig_id)
        counterparties[cp_id] = Counterparty(id=cp_id, full_name=cp_sec["full_name"], signatories=signatories)
        section_ids.add(cp_id)

    delimiters = template.get("delimiters")
    ref = TemplateRef(
        source=template["source"],
        format=TemplateFormat.parse(template["format"]) if template.get("format") else None,
        hash=template.get("hash"),
        delimiters=(delimiters[0], delimiters[1]) if delimiters else None,
    )
    params = {
        k: v for k, v in record.items()
        if k not in RESERVED_KEYS and k not in section_ids
    }
    return ref, counterparties, params


def load_contract(path: pathlib.Path) -> Contract:
    """Read and parse a contract file; the template is not resolved here."""
    path = pathlib.Path(path)
    if not path.is_file():
        raise ContractFormatError(f"contract file not found: {path}")
    raw = path.read_bytes()
    record = decode_record(raw, path.suffix)
    ref, counterparties, params = parse_record(record)
    logger.debug(f"Loaded contract {path} with {len(counterparties)} counterparties")
    return Contract(path, raw, ref, counterparties, params, record)


def load_contract_with_template(path: pathlib.Path, resolver: TemplateResolver) -> Contract:
    contract = load_contract(path)
    contract.resolve_template(resolver)
    return contract


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def encode_record(record: Dict[str, Any], suffix: str) -> str:
    suffix = suffix.lower()
    if suffix not in WRITABLE_SUFFIXES:
        raise ContractFormatError(
            f"cannot write {suffix!r} contract files; use one of {', '.join(WRITABLE_SUFFIXES)}"
        )
    if suffix == ".json":
        return json.dumps(record, indent=2, ensure_ascii=False) + "\n"
    return yaml.safe_dump(record, sort_keys=False, allow_unicode=True, default_flow_style=False)


def write_contract_record(path: pathlib.Path, record: Dict[str, Any]) -> None:
    path = pathlib.Path(path)
    atomic_write_text(path, encode_record(record, path.suffix))


def update_template_hash(path: pathlib.Path, resolver: TemplateResolver) -> Tuple[Optional[str], str]:
    """Re-fetch the template and pin its current hash in the contract file.

    Remote sources bypass the cache and overwrite the cache entry.
    Returns (old_hash, new_hash).
    """
    path = pathlib.Path(path)
    if path.suffix.lower() not in WRITABLE_SUFFIXES:
        raise ContractFormatError(f"cannot update template hash in read-only contract format: {path}")
    contract = load_contract(path)
    options = contract.load_options(verify=False)
    options.refresh = True
    template = resolver.load(contract.template_ref.source, options)
    old = contract.template_ref.hash
    record = dict(contract.record)
    record["template"] = dict(record["template"], hash=template.content_hash)
    write_contract_record(path, record)
    if old != template.content_hash:
        logger.info(f"{path}: template hash updated {old or '(unset)'} -> {template.content_hash}")
    return old, template.content_hash


def _params_from_variables(variables: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (_params_from_variables(v) if v else "") for k, v in variables.items()}


def new_contract_record(template: Template, counterparties: Sequence[Counterparty]) -> Dict[str, Any]:
    """Scaffold a record pinning ``template`` with a parameter per template variable."""
    tpl: Dict[str, Any] = {
        "source": template.source,
        "format": template.format.value,
        "hash": template.content_hash,
    }
    if template.delimiters:
        tpl["delimiters"] = list(template.delimiters)
    record: Dict[str, Any] = {
        "format_version": HASH_FORMAT_VERSION,
        "template": tpl,
        "counterparties": [cp.id for cp in counterparties],
    }
    for cp in counterparties:
        record[cp.id] = cp.to_record()
        for sig in cp.signatories.values():
            record[sig.id] = sig.to_record()
    for name, value in _params_from_variables(template.variables()).items():
        if name not in record:
            record[name] = value
    return record
