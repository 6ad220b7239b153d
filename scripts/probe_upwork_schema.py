"""Print the fields of an Upwork GraphQL type.

Offline diagnostic for schema drift; not part of the HTTP API.

    UPWORK_ACCESS_TOKEN=... python scripts/probe_upwork_schema.py MarketplaceJobPosting
"""
from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

INTROSPECTION_QUERY = """
query Probe($name: String!) {
  __type(name: $name) {
    name
    kind
    fields {
      name
      type { name kind ofType { name kind } }
    }
  }
}
"""


def describe(field: dict) -> str:
    kind = field.get("type") or {}
    name = kind.get("name") or (kind.get("ofType") or {}).get("name") or "?"
    return f"{field['name']}: {name} ({kind.get('kind')})"


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("type_name", nargs="?", default="MarketplaceJobPosting", help="GraphQL type to inspect")
    parser.add_argument(
        "--url",
        default=os.getenv("UPWORK_GRAPHQL_URL", "https://api.upwork.com/graphql"),
        help="GraphQL endpoint",
    )
    parser.add_argument("--raw", action="store_true", help="Print the raw JSON response")
    args = parser.parse_args()

    token = os.getenv("UPWORK_ACCESS_TOKEN")
    if not token:
        print("UPWORK_ACCESS_TOKEN is not set", file=sys.stderr)
        return 2

    response = httpx.post(
        args.url,
        json={"query": INTROSPECTION_QUERY, "variables": {"name": args.type_name}},
        headers={"Authorization": f"Bearer {token}"},
        timeout=20,
    )
    print(f"HTTP {response.status_code}")
    body = response.json()
    if args.raw:
        print(json.dumps(body, indent=2))
        return 0
    if body.get("errors"):
        print(json.dumps(body["errors"], indent=2), file=sys.stderr)
        return 1
    described = (body.get("data") or {}).get("__type")
    if not described:
        print(f"Type {args.type_name!r} not found", file=sys.stderr)
        return 1
    print(f"{described['name']} ({described['kind']})")
    for field in described.get("fields") or []:
        print("  " + describe(field))
    return 0


if __name__ == "__main__":
    sys.exit(main())
