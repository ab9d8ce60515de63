#!/usr/bin/env python3
"""
Claw Governance - Command Line Interface

Usage:
    claw verify [--all | --segment NAME]      Verify audit hash chain integrity
    claw query [--agent ID] [--type T] ...    Query audit entries
    claw report --start ISO --end ISO         Generate a compliance report
    claw health <agent_id>                    Show identity/policy/trust health
    claw create-identity <agent_id>           Register a new agent identity
    claw revoke <agent_id> --reason TEXT      Revoke an agent identity
    claw rotate-key <agent_id>                Rotate an agent's keypair
    claw policies                             List loaded agent policies
    claw schema-validate <path>               Validate policies, identity records
                                              or audit segments against JSON Schemas

Storage locations come from CLAW_POLICY_DIR / CLAW_AUDIT_DIR / CLAW_IDENTITY_DIR
unless overridden with --policy-dir / --audit-dir / --identity-dir.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from claw_gateway.audit_log import AuditLog
from claw_gateway.config import GovernanceConfig
from claw_gateway.errors import GovernanceError
from claw_gateway.governance import GovernanceGateway
from claw_gateway.identity import IdentityRegistry
from claw_gateway.policy import load_policy_directory


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logging.getLogger("claw_gateway").setLevel(level)


def load_config(args) -> GovernanceConfig:
    """Environment configuration with command-line directory overrides."""
    config = GovernanceConfig.from_env()
    if args.policy_dir:
        config.policy_dir = args.policy_dir
    if args.audit_dir:
        config.audit_dir = args.audit_dir
    if args.identity_dir:
        config.identity_dir = args.identity_dir
    return config


def _audit_log(config: GovernanceConfig) -> AuditLog:
    return AuditLog(Path(config.audit_dir), rotation_size_bytes=config.rotation_size_bytes)


def _identity_registry(config: GovernanceConfig) -> IdentityRegistry:
    if not config.identity_dir:
        raise SystemExit("An identity directory is required (set CLAW_IDENTITY_DIR or --identity-dir)")
    return IdentityRegistry(
        _audit_log(config), Path(config.identity_dir), min_trust_score=config.min_trust_score
    )


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def cmd_verify(args):
    """Verify hash chain integrity of one or all audit segments."""
    config = load_config(args)
    audit = _audit_log(config)

    if args.all:
        results = audit.verify_all()
    else:
        results = [audit.verify_chain(args.segment)]

    if args.json:
        _print_json([r.as_dict() for r in results])
    else:
        for r in results:
            if r.valid:
                print(f"✓ {r.segment}: {r.entries} entries, chain intact")
            else:
                print(f"✗ {r.segment}: {r.error}")
    return 0 if all(r.valid for r in results) else 2


def cmd_query(args):
    """Query audit entries across all segments."""
    config = load_config(args)
    audit = _audit_log(config)

    allowed = None
    if args.allowed:
        allowed = True
    elif args.denied:
        allowed = False

    entries = audit.query(
        agent_id=args.agent,
        entry_type=args.type,
        action=args.action,
        start_time=args.start,
        end_time=args.end,
        allowed=allowed,
    )
    if args.limit:
        entries = entries[-args.limit:]

    if args.json:
        _print_json(entries)
        return 0

    print(f"\n{'='*60}")
    print(f"AUDIT ENTRIES ({len(entries)})")
    print(f"{'='*60}")
    for e in entries:
        payload = e.get("decision") or e.get("result") or {}
        summary = payload.get("reason") or payload.get("error") or ""
        print(f"{e.get('timestamp')}  {e.get('type'):<22} {e.get('agentId') or '-':<20} {e.get('action') or '-'}  {summary}")
    print()
    return 0


def cmd_report(args):
    """Generate a compliance report for a time window."""
    config = load_config(args)
    audit = _audit_log(config)
    report = audit.generate_compliance_report(args.start, args.end)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, ensure_ascii=False)
        print(f"Wrote compliance report to {args.output}")
    else:
        _print_json(report)
    return 0


def cmd_health(args):
    """Show the health of one agent."""
    config = load_config(args)
    gateway = GovernanceGateway.from_config(config)
    health = gateway.health_check(args.agent_id)
    _print_json(health)
    return 0 if health["healthy"] else 1


def cmd_create_identity(args):
    """Register a new agent identity."""
    config = load_config(args)
    registry = _identity_registry(config)
    view = registry.create_identity(
        args.agent_id,
        {"name": args.name, "role": args.role, "owner": args.owner, "createdBy": "cli"},
    )
    _print_json(view.to_dict())
    return 0


def cmd_revoke(args):
    """Revoke an agent identity."""
    config = load_config(args)
    registry = _identity_registry(config)
    view = registry.revoke_identity(args.agent_id, args.reason)
    print(f"Revoked {view.agent_id} (status={view.status}, trust={view.trust_score})")
    return 0


def cmd_rotate_key(args):
    """Rotate an agent's keypair."""
    config = load_config(args)
    registry = _identity_registry(config)
    view = registry.rotate_keypair(args.agent_id)
    print(f"Rotated keypair for {view.agent_id} ({view.archived_key_count} archived keys)")
    return 0


def cmd_policies(args):
    """List the agent policies found in the policy directory."""
    config = load_config(args)
    policies = load_policy_directory(Path(config.policy_dir))

    if args.json:
        _print_json([p.to_document() for p in policies.values()])
        return 0

    for agent_id in sorted(policies):
        p = policies[agent_id]
        print(f"{agent_id}: allow={len(p.allow_rules)} deny={len(p.deny_rules)} escalate={len(p.escalate_rules)}")
    return 0


def cmd_schema_validate(args):
    """Validate governance documents against JSON Schemas."""
    from claw_schema_validate import list_schemas, validate_path

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


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claw",
        description="Claw Governance CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--policy-dir", default=None, help="Policy directory (default: env CLAW_POLICY_DIR)")
    parser.add_argument("--audit-dir", default=None, help="Audit log directory (default: env CLAW_AUDIT_DIR)")
    parser.add_argument("--identity-dir", default=None, help="Identity directory (default: env CLAW_IDENTITY_DIR)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Verify audit hash chain integrity")
    verify_parser.add_argument("--segment", default=None, help="Segment file (default: active segment)")
    verify_parser.add_argument("--all", action="store_true", help="Verify every segment")
    verify_parser.add_argument("--json", action="store_true", help="Emit JSON")
    verify_parser.set_defaults(func=cmd_verify)

    # query command
    query_parser = subparsers.add_parser("query", help="Query audit entries")
    query_parser.add_argument("--agent", default=None, help="Filter by agent id")
    query_parser.add_argument("--type", default=None, help="Filter by entry type")
    query_parser.add_argument("--action", default=None, help="Filter by action")
    query_parser.add_argument("--start", default=None, help="Start timestamp (ISO format)")
    query_parser.add_argument("--end", default=None, help="End timestamp (ISO format)")
    allowed_group = query_parser.add_mutually_exclusive_group()
    allowed_group.add_argument("--allowed", action="store_true", help="Only allowed decisions")
    allowed_group.add_argument("--denied", action="store_true", help="Only denied decisions")
    query_parser.add_argument("--limit", type=int, default=0, help="Keep only the last N entries")
    query_parser.add_argument("--json", action="store_true", help="Emit JSON")
    query_parser.set_defaults(func=cmd_query)

    # report command
    report_parser = subparsers.add_parser("report", help="Generate a compliance report")
    report_parser.add_argument("--start", required=True, help="Start timestamp (ISO format)")
    report_parser.add_argument("--end", required=True, help="End timestamp (ISO format)")
    report_parser.add_argument("--output", "-o", help="Output file (default: stdout)")
    report_parser.set_defaults(func=cmd_report)

    # health command
    health_parser = subparsers.add_parser("health", help="Show agent health")
    health_parser.add_argument("agent_id", help="Agent id")
    health_parser.set_defaults(func=cmd_health)

    # identity commands
    create_parser = subparsers.add_parser("create-identity", help="Register an agent identity")
    create_parser.add_argument("agent_id", help="Agent id")
    create_parser.add_argument("--name", default=None)
    create_parser.add_argument("--role", default=None)
    create_parser.add_argument("--owner", default=None)
    create_parser.set_defaults(func=cmd_create_identity)

    revoke_parser = subparsers.add_parser("revoke", help="Revoke an agent identity")
    revoke_parser.add_argument("agent_id", help="Agent id")
    revoke_parser.add_argument("--reason", required=True, help="Revocation reason")
    revoke_parser.set_defaults(func=cmd_revoke)

    rotate_parser = subparsers.add_parser("rotate-key", help="Rotate an agent keypair")
    rotate_parser.add_argument("agent_id", help="Agent id")
    rotate_parser.set_defaults(func=cmd_rotate_key)

    # policies command
    policies_parser = subparsers.add_parser("policies", help="List agent policies")
    policies_parser.add_argument("--json", action="store_true", help="Emit policy documents as JSON")
    policies_parser.set_defaults(func=cmd_policies)

    # schema-validate command
    sv_parser = subparsers.add_parser(
        "schema-validate",
        help="Validate policies, identity records or audit segments against JSON Schemas",
    )
    sv_parser.add_argument("path", nargs="?", default=".", help="File or directory to validate")
    sv_parser.add_argument(
        "--schema",
        default=None,
        help="Schema name override (policy|identity|audit_entry)",
    )
    sv_parser.add_argument(
        "--schemas-dir",
        default=None,
        help="Directory containing schema files (default: claw_gateway/schemas)",
    )
    sv_parser.add_argument(
        "--list-schemas",
        action="store_true",
        help="List supported schema names",
    )
    sv_parser.set_defaults(func=cmd_schema_validate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except GovernanceError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
