#!/usr/bin/env python3
"""Run a skill workflow definition and print the run record as JSON.

Usage:
    python scripts/run_skill.py path/to/workflow.json --tenant acme \\
        --params '{"quarter": "Q3"}' --tools myproject.skill_tools

    # Business context for the in-memory store:
    python scripts/run_skill.py workflow.json --context context.json

Environment Variables:
    ANTHROPIC_API_KEY / FIREWORKS_API_KEY / OPENAI_API_KEY: platform provider keys
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    REDIS_URL: Redis for token counters and live run state (optional)
"""
from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _load_json(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


async def run_skill(
    workflow: dict,
    *,
    tenant_id: str | None,
    params: dict,
    context: dict | None,
    tools_module: str | None,
) -> dict:
    # Import here to avoid loading config before env vars are set
    from skillkernel.service.runtime import get_runtime

    runtime = get_runtime()
    if tools_module:
        module = importlib.import_module(tools_module)
        module.register_tools(runtime.tools)
    if context is not None and hasattr(runtime.store, "set_business_context"):
        runtime.store.set_business_context(
            tenant_id or runtime.settings.default_tenant_id, context
        )
    try:
        record = await runtime.execute(workflow, tenant_id, params)
    finally:
        await runtime.aclose()
    return record.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description="Execute a skill workflow definition",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("workflow", help="Path to a workflow definition JSON file")
    parser.add_argument(
        "--tenant",
        default=os.environ.get("DEFAULT_TENANT_ID"),
        help="Tenant to run for (or set DEFAULT_TENANT_ID env var)",
    )
    parser.add_argument(
        "--params", default="{}", help="JSON object of run parameters"
    )
    parser.add_argument(
        "--context", help="JSON file with the tenant business context (memory store only)"
    )
    parser.add_argument(
        "--tools",
        help="Dotted module path exposing register_tools(registry) for compute functions",
    )
    parser.add_argument(
        "--indent", type=int, default=2, help="Indentation of the printed JSON"
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")

    try:
        workflow = _load_json(args.workflow)
        params = json.loads(args.params)
        context = _load_json(args.context) if args.context else None
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        result = asyncio.run(
            run_skill(
                workflow,
                tenant_id=args.tenant,
                params=params,
                context=context,
                tools_module=args.tools,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=args.indent, default=str))
    sys.exit(0 if result["status"] in {"completed", "partial"} else 2)


if __name__ == "__main__":
    main()
