#!/usr/bin/env python3
"""Emit deterministic SQL that registers a machine module and its API key."""

from __future__ import annotations

import argparse
import hashlib
import secrets

DEFAULT_SCOPES = ("jobs:read", "jobs:write", "matching:run", "matches:read")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def render_sql(*, module_id: str, name: str, scopes: list[str], api_key: str) -> str:
    module_value = _quote_sql(module_id)
    scopes_value = "array[" + ", ".join(_quote_sql(scope) for scope in scopes) + "]::text[]"

    return f"""-- bidscout module bootstrap SQL
-- Run this in a privileged Postgres session against the bidscout database.

insert into modules (module_id, name, enabled, scopes)
values ({module_value}, {_quote_sql(name)}, true, {scopes_value})
on conflict (module_id) do update
set name = excluded.name, enabled = true, scopes = excluded.scopes;

insert into module_credentials (module_id, key_hash, is_active)
select id, {_quote_sql(hash_api_key(api_key))}, true
from modules
where module_id = {module_value};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a bidscout machine module.")
    parser.add_argument("--module-id", required=True, help="Value the module sends as X-Module-Id")
    parser.add_argument("--name", default=None, help="Human readable module name")
    parser.add_argument(
        "--scope",
        action="append",
        dest="scopes",
        help="Scope to grant; repeat for several (defaults to the worker scope set)",
    )
    parser.add_argument("--api-key", default=None, help="API key to register; generated when omitted")
    args = parser.parse_args()

    api_key = args.api_key or secrets.token_urlsafe(32)
    print(
        render_sql(
            module_id=args.module_id,
            name=args.name or args.module_id,
            scopes=args.scopes or list(DEFAULT_SCOPES),
            api_key=api_key,
        )
    )
    if not args.api_key:
        print(f"-- generated api key (store it now, it is not recoverable): {api_key}")


if __name__ == "__main__":
    main()
