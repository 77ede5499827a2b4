from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.balance import CreditBalance
from .models.base import DBSerializableModel
from .models.transaction import CreditTransaction


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    CreditBalance,
    CreditTransaction,
]

# Secondary indexes the ledger queries rely on
INDEXES: Dict[str, List[List[str]]] = {
    CreditTransaction.collection_name: [
        ["user_id", "timestamp"],
        ["user_id", "sequence"],
        ["user_id", "operation_id"],
    ],
}


def generate_logical_schema(collections: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for the registered models,
    optionally restricted to the named collections.
    """
    schema: Dict[str, Any] = {}
    for model in MODEL_REGISTRY:
        if collections and model.collection_name not in collections:
            continue
        spec = model.db_schema()
        spec["indexes"] = INDEXES.get(model.collection_name, [])
        schema[model.collection_name] = spec
    return schema


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Small SQL DDL renderer. Nested values (the balance outbox, transaction
    metadata) become JSON columns.
    """
    lines: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NULL" if meta["nullable"] else "NOT NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        lines.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        )
        for fields in spec.get("indexes", []):
            index_name = f"ix_{table_name}_{'_'.join(fields)}"
            cols = ", ".join(f'"{f}"' for f in fields)
            lines.append(f'CREATE INDEX IF NOT EXISTS "{index_name}" ON "{table_name}" ({cols});\n')
    return "\n".join(lines)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render a JSON representation that can be used to configure validators
    and indexes for document databases like MongoDB.
    """
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "BIGINT"
    if logical_type == "number":
        return "NUMERIC"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type == "datetime":
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type in {"array", "object"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the credit ledger collections."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    parser.add_argument(
        "--collection",
        action="append",
        dest="collections",
        help="Only render this collection; may be repeated.",
    )
    parser.add_argument("--output", type=Path, help="Write to this file instead of stdout.")
    args = parser.parse_args(argv)

    schema = generate_logical_schema(args.collections)
    if args.backend == "sql":
        rendered = render_sql_ddl(schema, dialect=args.dialect)
    else:
        rendered = render_nosql_schema(schema)

    if args.output:
        args.output.write_text(rendered, encoding="utf-8")
    else:
        print(rendered)


if __name__ == "__main__":
    main()
