"""JSON Schema validation infrastructure.

Provides schema validation for pactum's on-disk records with:
- Automatic schema resolution via $ref
- Cross-reference registry for the bundled schemas
- Cached validators
- Clear error reporting
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from pactum.core import PACKAGE_ROOT, load_json

SCHEMAS_DIR = PACKAGE_ROOT / "schemas"
SCHEMA_BASE_URI = "https://schemas.pactum.dev/"

CONTRACT_SCHEMA = "contract.schema.json"
CACHE_INDEX_SCHEMA = "cache-index.schema.json"


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Build a registry of the bundled schemas so $ref resolves across files."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        schema_id = schema.get("$id") or f"{SCHEMA_BASE_URI}{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(schema_name: str, schemas_dir: Path = SCHEMAS_DIR) -> Draft202012Validator:
    """Create a validator for a bundled schema file.

    Args:
        schema_name: File name under ``schemas/``
        schemas_dir: Directory holding the schemas

    Returns:
        A configured Draft202012Validator
    """
    schema = load_json(schemas_dir / schema_name)
    return Draft202012Validator(schema, registry=_schema_registry(schemas_dir))


def validate_against_schema(obj: Any, schema_name: str) -> List[str]:
    """Validate an object against a bundled schema.

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(schema_name)
    errors = sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    return [f"{error.json_path}: {error.message}" for error in errors]


def validate_contract_record(obj: Any) -> List[str]:
    return validate_against_schema(obj, CONTRACT_SCHEMA)


def validate_cache_index(obj: Any) -> List[str]:
    return validate_against_schema(obj, CACHE_INDEX_SCHEMA)
