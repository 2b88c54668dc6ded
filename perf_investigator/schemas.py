"""
JSON Schema gate for everything persisted under the perf state directory.

Schemas live beside this module in `json_schemas/*.json`; `$ref`s between them
resolve through an in-memory registry, so validation never touches the
network.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema
from referencing import Registry, Resource

from .errors import InvestigationStateError

SCHEMA_DIR = Path(__file__).resolve().parent / "json_schemas"
INVESTIGATION_SCHEMA = "investigation_v1.json"
BASELINE_SCHEMA = "baseline_v1.json"
METRICS_SCHEMA = "metrics_v1.json"


def load_schema(name: str) -> dict[str, Any]:
    return json.loads((SCHEMA_DIR / name).read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def _registry() -> Registry:
    resources = []
    for path in sorted(SCHEMA_DIR.glob("*.json")):
        schema = load_schema(path.name)
        resources.append((schema["$id"], Resource.from_contents(schema)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def _validator(name: str) -> jsonschema.protocols.Validator:
    schema = load_schema(name)
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)
    return cls(schema, registry=_registry())


def schema_errors(instance: Any, schema_name: str) -> list[str]:
    validator = _validator(schema_name)
    errors = sorted(validator.iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path])
    out: list[str] = []
    for err in errors:
        where = "/".join(str(p) for p in err.absolute_path) or "<root>"
        out.append(f"{where}: {err.message}")
    return out


def validate_investigation(doc: Any) -> list[str]:
    return schema_errors(doc, INVESTIGATION_SCHEMA)


def validate_baseline(record: Any) -> list[str]:
    return schema_errors(record, BASELINE_SCHEMA)


def validate_metrics(metrics: Any) -> list[str]:
    return schema_errors(metrics, METRICS_SCHEMA)


def assert_valid(errors: list[str], label: str) -> None:
    if errors:
        raise InvestigationStateError(f"{label}: {'; '.join(errors)}")
