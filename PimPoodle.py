#!/usr/bin/env python3
# ================================================================
# Tool     : PimPoodle
# Purpose  : List, activate and deactivate Entra PIM roles from
#            the console
# Notes    : "Because every privilege deserves a short leash." 🐩
# ================================================================

import argparse
import sys

from core.config import fncInitConfig, fncApplyCliOverrides, fncIsDebug, fncSaveConfig, fncUpdateConfigField
from core.errors import AuthenticationError, PimError, RoleSourceError
from core.exports import fncExportList, fncExportRoles
from core.utils import fncPrintMessage, fncSafeGet, fncSetDebug, fncDisplayBanner, fncBlurb

VERSION = "v1.0"


# ================================================================
# Function: fncParseArguments
# Purpose  : Define and parse command-line arguments for PimPoodle
# Notes    : list / activate / deactivate / switch-account
# ================================================================
def fncParseArguments(argv=None):
    parser = argparse.ArgumentParser(
        prog="PimPoodle",
        description="PimPoodle 🐩 — policy-aware PIM role activation"
    )
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--tenant", help="Tenant id or domain (overrides config)")

    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list", help="Show eligible and active roles")
    p_list.add_argument("--refresh", action="store_true", help="Ignore the cached role list")
    p_list.add_argument(
        "--export",
        nargs="*",
        metavar="FMT[,FMT...]",
        help="Export formats: csv, json. Example: --export json,csv",
        default=None
    )

    p_act = sub.add_parser("activate", help="Activate eligible roles (names or ids)")
    p_act.add_argument("roles", nargs="+", help="Role display names or ids")
    p_act.add_argument("--hours", type=int, default=None, help="Requested hours (capped by policy)")
    p_act.add_argument("--minutes", type=int, default=None, help="Requested minutes")
    p_act.add_argument("--justification", default=None)
    p_act.add_argument("--ticket", default=None, help="Ticket number")
    p_act.add_argument("--ticket-system", default=None)

    p_de = sub.add_parser("deactivate", help="Deactivate active roles (names or ids)")
    p_de.add_argument("roles", nargs="+", help="Role display names or ids")
    p_de.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    sub.add_parser("switch-account", help="Sign out and sign in as someone else")

    return parser.parse_args(argv)


# ================================================================
# Function: fncInitClient
# Purpose  : Build the delegated Graph client from config
# ================================================================
def fncInitClient(cfg: dict):
    from handlers.graph.client import GraphClient

    entra_cfg = cfg.get("entra", {})
    auth_cfg = cfg.get("auth", {})
    return GraphClient(
        tenant_id=entra_cfg.get("tenant_id") or "organizations",
        client_id=entra_cfg.get("client_id"),
        authority_host=entra_cfg.get("authority") or "https://login.microsoftonline.com",
        interactive_timeout=auth_cfg.get("interactive_timeout_seconds", 120),
    )


def _progress(message: str, percent: int) -> None:
    fncPrintMessage(f"{percent:3d}% {message}", "info")


# ================================================================
# Function: fncRunCommand
# Purpose  : Dispatch one sub-command against a signed-in session
# Notes    : Returns the process exit code
# ================================================================
def fncRunCommand(args, session, cfg: dict) -> int:
    from modules.pim.console import fncPrintRoleTables, fncRoleRows, fncSelectRoles

    if args.command == "list":
        result = session.roles(progress=_progress, force=args.refresh)
        fncPrintRoleTables(result)
        formats = fncExportList(args.export)
        if formats:
            fncExportRoles(result, fncRoleRows, formats)
        return 0

    if args.command == "activate":
        roles = fncSelectRoles(session.roles(progress=_progress).eligible_roles, args.roles)
        if not roles:
            fncPrintMessage("Nothing to activate.", "warn")
            return 1
        outcome = session.activate(roles, hours=args.hours, minutes=args.minutes)
        if args.ticket_system:
            fncUpdateConfigField(cfg, "activation.ticket_system", args.ticket_system)
            fncSaveConfig(cfg)
        return 0 if outcome.cancelled or outcome.success_count == outcome.total_count else 2

    if args.command == "deactivate":
        roles = fncSelectRoles(session.roles(progress=_progress).active_roles, args.roles)
        if not roles:
            fncPrintMessage("Nothing to deactivate.", "warn")
            return 1
        outcome = session.deactivate(roles)
        return 0 if outcome.cancelled or outcome.success_count == outcome.total_count else 2

    if args.command == "switch-account":
        session.client.sign_out()
        session.clear()
        username = session.client.sign_in()
        fncUpdateConfigField(cfg, "entra.last_account", username)
        fncSaveConfig(cfg)
        return 0

    fncPrintMessage(f"Unknown command: {args.command}", "error")
    return 1


# ================================================================
# Function: main
# Purpose  : Main entry point for PimPoodle execution
# Notes    : Handles CLI parsing, config loading, sign-in, dispatch
# ================================================================
def main(argv=None) -> int:
    args = fncParseArguments(argv)

    # Load or create configuration, set debug
    cfg = fncInitConfig()
    cfg = fncApplyCliOverrides(cfg, args)
    fncSetDebug(fncIsDebug(cfg))

    fncDisplayBanner(VERSION)
    fncBlurb(args.command if args.command in ("list", "activate", "deactivate") else "generic")
    if fncIsDebug(cfg):
        fncPrintMessage("Debug output enabled.", "debug")

    from modules.pim.console import ConsoleInputProvider
    from modules.pim.session import PimSession

    client = fncInitClient(cfg)
    provider = ConsoleInputProvider(
        justification=getattr(args, "justification", None),
        ticket_number=getattr(args, "ticket", None),
        ticket_system=getattr(args, "ticket_system", None) or fncSafeGet(cfg, "activation.ticket_system") or None,
        assume_yes=getattr(args, "yes", False),
    )

    try:
        if args.command != "switch-account":
            last = cfg.get("entra", {}).get("last_account") or None
            username = client.sign_in(login_hint=last)
            if username and username != last:
                fncUpdateConfigField(cfg, "entra.last_account", username)
                fncSaveConfig(cfg)
        session = PimSession(client, cfg, provider)
        code = fncRunCommand(args, session, cfg)
    except AuthenticationError as ex:
        fncPrintMessage(f"Sign-in failed: {ex}", "error")
        return 3
    except RoleSourceError as ex:
        fncPrintMessage(str(ex), "error")
        return 4
    except PimError as ex:
        fncPrintMessage(f"PimPoodle hit a snag: {ex}", "error")
        return 1

    fncPrintMessage("Done. Tail wag achieved.", "success")
    return code


if __name__ == "__main__":
    sys.exit(main())
