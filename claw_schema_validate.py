"""claw_schema_validate: JSON Schema validation helpers for governance documents.

This module underpins the `claw schema-validate` CLI subcommand and the
policy/identity loaders.

It validates:
- Agent policy documents (.yaml/.yml/.json)
- Agent identity records (.json)
- Audit log segments (.jsonl, one entry per line)

Schemas live in: claw_gateway/schemas/

Design notes:
- Uses jsonschema Draft 2020-12.
- Fails closed: schema load errors are treated as validation failures.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
import yaml


@dataclass
class SchemaMessage:
    ok: bool
    code: str
    detail: str


SCHEMA_FILES: Dict[str, str] = {
    "policy": "policy.schema.json",
    "identity": "identity.schema.json",
    "audit_entry": "audit_entry.schema.json",
}


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _load_document(path: Path) -> Any:
    if path.suffix.lower() in (".yaml", ".yml"):
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    return _load_json(path)


def _default_schemas_dir() -> Path:
    # module is in repo root, schemas ship inside the package
    return Path(__file__).resolve().parent / "claw_gateway" / "schemas"


def _detect_schema_name(path: Path) -> Optional[str]:
    name = path.name.lower()

    if name.endswith(".jsonl") and name.startswith("audit-"):
        return "audit_entry"
    if name.endswith((".yaml", ".yml")):
        return "policy"
    if name.endswith(".policy.json") or name.startswith("policy"):
        return "policy"
    if name.endswith(".json"):
        # identity store files are named <agentId>.json
        return "identity"
    return None


@lru_cache(maxsize=None)
def _get_validator(schema_name: str, schemas_dir: Path):
    schema_file = SCHEMA_FILES.get(schema_name)
    if not schema_file:
        raise ValueError(f"Unknown schema: {schema_name}")

    schema = _load_json(schemas_dir / schema_file)

    # Draft 2020-12
    return jsonschema.Draft202012Validator(schema)


def validate_instance(
    obj: Any,
    *,
    schema_name: str,
    schemas_dir: Optional[Path] = None,
) -> Tuple[bool, List[SchemaMessage]]:
    schemas_dir = schemas_dir or _default_schemas_dir()
    msgs: List[SchemaMessage] = []
    try:
        validator = _get_validator(schema_name, schemas_dir)
    except FileNotFoundError as e:
        return False, [SchemaMessage(False, "SCHEMA_MISSING", str(e))]
    except (ValueError, jsonschema.SchemaError) as e:
        return False, [SchemaMessage(False, "SCHEMA_LOAD_ERROR", str(e))]

    errors = sorted(validator.iter_errors(obj), key=lambda e: list(e.absolute_path))
    if errors:
        for e in errors[:50]:
            loc = "/".join(str(p) for p in e.absolute_path)
            loc = loc or "<root>"
            msgs.append(SchemaMessage(False, "SCHEMA_ERROR", f"{schema_name} {loc}: {e.message}"))
        if len(errors) > 50:
            msgs.append(
                SchemaMessage(False, "SCHEMA_ERROR", f"{schema_name}: {len(errors) - 50} more errors...")
            )
        return False, msgs
    msgs.append(SchemaMessage(True, "SCHEMA_OK", f"{schema_name}: valid"))
    return True, msgs


def validate_file(
    path: Path,
    *,
    schema_name: Optional[str] = None,
    schemas_dir: Optional[Path] = None,
) -> Tuple[bool, List[SchemaMessage]]:
    schema_name = schema_name or _detect_schema_name(path)

    if not schema_name:
        return False, [SchemaMessage(False, "SCHEMA_UNDETECTED", f"Cannot infer schema for {path.name}. Use --schema.")]

    # JSONL support for audit segments (one JSON object per line)
    if path.suffix.lower() == ".jsonl":
        ok_all = True
        out_msgs: List[SchemaMessage] = []
        with path.open("r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except ValueError as e:
                    ok_all = False
                    out_msgs.append(SchemaMessage(False, "JSONL_PARSE_ERROR", f"line[{i}]: {e}"))
                    continue
                ok, msgs = validate_instance(obj, schema_name=schema_name, schemas_dir=schemas_dir)
                ok_all = ok_all and ok
                for m in msgs:
                    if m.ok:
                        continue
                    out_msgs.append(SchemaMessage(False, m.code, f"line[{i}]: {m.detail}"))

        if ok_all:
            return True, [SchemaMessage(True, "SCHEMA_OK", f"{path.name}: all lines valid")]
        return False, out_msgs

    try:
        obj = _load_document(path)
    except (ValueError, yaml.YAMLError) as e:
        return False, [SchemaMessage(False, "PARSE_ERROR", f"{path.name}: {e}")]

    return validate_instance(obj, schema_name=schema_name, schemas_dir=schemas_dir)


def validate_path(
    path: Path,
    *,
    schema_name: Optional[str] = None,
    schemas_dir: Optional[Path] = None,
) -> Tuple[bool, List[SchemaMessage]]:
    """Validate a single file, or every recognised file in a directory."""

    if not path.exists():
        return False, [SchemaMessage(False, "NOT_FOUND", str(path))]

    if not path.is_dir():
        return validate_file(path, schema_name=schema_name, schemas_dir=schemas_dir)

    ok_all = True
    msgs: List[SchemaMessage] = []
    for p in sorted(path.iterdir()):
        if not p.is_file() or p.suffix.lower() not in (".json", ".jsonl", ".yaml", ".yml"):
            continue
        ok, m = validate_file(p, schema_name=schema_name, schemas_dir=schemas_dir)
        ok_all = ok_all and ok
        msgs.extend(m)
    return ok_all, msgs


def list_schemas() -> List[str]:
    return sorted(SCHEMA_FILES.keys())


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint for `python -m claw_schema_validate`.

    This is intentionally minimal; the richer UX lives under `claw schema-validate`.
    """

    import argparse

    parser = argparse.ArgumentParser(prog="claw_schema_validate")
    parser.add_argument("path", help="Path to a policy, identity record, audit segment, or a directory of them")
    parser.add_argument("--schema", dest="schema", default=None, help="Override schema name")
    parser.add_argument(
        "--schemas-dir",
        dest="schemas_dir",
        default=None,
        help="Directory containing schema files (default: claw_gateway/schemas)",
    )
    parser.add_argument(
        "--list-schemas",
        action="store_true",
        help="List supported schema names and exit",
    )

    args = parser.parse_args(argv)

    if args.list_schemas:
        for name in list_schemas():
            print(name)
        return 0

    ok, messages = validate_path(
        Path(args.path),
        schema_name=args.schema,
        schemas_dir=Path(args.schemas_dir) if args.schemas_dir else None,
    )

    for m in messages:
        prefix = "OK" if m.ok else "FAIL"
        print(f"{prefix} {m.code}: {m.detail}")
    return 0 if ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
