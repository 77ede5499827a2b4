from __future__ import annotations

import json

from credit_ledger.schema_generator import generate_logical_schema, main, render_sql_ddl


def test_logical_schema_covers_ledger_collections():
    schema = generate_logical_schema()

    assert set(schema) == {"credit_balances", "credit_transactions"}
    balances = schema["credit_balances"]
    assert balances["primary_key"] == "user_id"
    assert balances["properties"]["fresh_credits"]["type"] == "integer"
    assert balances["properties"]["carryover_expires_at"]["nullable"] is True
    assert balances["properties"]["pending_transactions"]["type"] == "array"
    assert balances["properties"]["tier"]["type"] == "string"
    assert ["user_id", "timestamp"] in schema["credit_transactions"]["indexes"]


def test_sql_ddl():
    ddl = render_sql_ddl(generate_logical_schema(["credit_transactions"]))

    assert 'CREATE TABLE IF NOT EXISTS "credit_transactions"' in ddl
    assert '"metadata" JSONB' in ddl
    assert '"timestamp" TIMESTAMPTZ' in ddl
    assert 'PRIMARY KEY ("id")' in ddl
    assert "credit_balances" not in ddl


def test_cli_writes_nosql_schema(tmp_path):
    output = tmp_path / "schema.json"

    main(["--backend", "nosql", "--output", str(output)])

    assert set(json.loads(output.read_text())) == {"credit_balances", "credit_transactions"}
