"""
Entry point: a small command line over PortalApp.

    portal login EMAIL PASSWORD
    portal logout | whoami | validate
    portal register EMAIL PASSWORD [--first-name X] [--last-name Y]
    portal reset-password EMAIL
    portal donations [--status S] [--limit N] [--offset N]
    portal donation ID
    portal pay ID
    portal status [--donation-id ID] [--order-id OID]
    portal resume RETURN_URL
    portal watch [--status S]      poll the list until nothing is pending
    portal config [--return-url U] [--confirmation-url U]   save settings (with --server)
"""

import asyncio
import argparse

from .constants import PORTAL_VERSION
from .config import log, safe_print, setup_logging, resolve_config, load_config, save_config
from .errors import PortalError
from .app import PortalApp
from .reconciliation import donations_key


def build_parser():
    parser = argparse.ArgumentParser(prog="portal", description="Donation portal client")
    parser.add_argument("--server", help="API base URL (overrides config)")
    parser.add_argument("--version", action="version", version=PORTAL_VERSION)
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("login")
    p.add_argument("email")
    p.add_argument("password")

    sub.add_parser("logout")
    sub.add_parser("whoami")
    sub.add_parser("validate")

    p = sub.add_parser("register")
    p.add_argument("email")
    p.add_argument("password")
    p.add_argument("--first-name")
    p.add_argument("--last-name")

    p = sub.add_parser("reset-password")
    p.add_argument("email")

    for name in ("donations", "watch"):
        p = sub.add_parser(name)
        p.add_argument("--status")
        p.add_argument("--limit", type=int)
        p.add_argument("--offset", type=int)

    p = sub.add_parser("donation")
    p.add_argument("id")

    p = sub.add_parser("pay")
    p.add_argument("id")

    p = sub.add_parser("status")
    p.add_argument("--donation-id")
    p.add_argument("--order-id")

    p = sub.add_parser("resume")
    p.add_argument("url")

    p = sub.add_parser("config")
    p.add_argument("--return-url")
    p.add_argument("--confirmation-url")
    p.add_argument("--no-degraded-login", action="store_true",
                   help="fail instead of signing in locally when the API is unreachable")
    return parser


def _print_donation(d):
    safe_print(f"{d.id:>8}  {d.status.name:<9} {d.amount:>10} {d.currency:<4} "
               f"{d.donor_name}  order={d.gateway_order_id or '-'}")


async def _watch(app, filters):
    """Follow a list until no donation waits on the gateway."""
    done = asyncio.Event()

    def on_change(page):
        if page is None:
            return
        safe_print(f"-- {len(page.donations)} donations --")
        for d in page.donations:
            _print_donation(d)
        if not page.any_awaiting_gateway:
            done.set()

    unsubscribe = app.payments.subscribe(donations_key(filters), on_change)
    try:
        await app.payments.list_donations(filters, force=True)
        await done.wait()
    finally:
        unsubscribe()


async def run_command(app, args):
    session = app.session
    payments = app.payments
    cmd = args.command

    if cmd == "login":
        s = await session.login({"email": args.email, "password": args.password})
        note = "  (DEGRADED — not verified by the server)" if s.degraded else ""
        safe_print(f"Signed in as {s.email} [{session.user_role()}]{note}")
        safe_print(f"Dashboard: {session.dashboard_route()}")
    elif cmd == "logout":
        await session.logout()
        safe_print("Signed out.")
    elif cmd == "whoami":
        s = session.current_session
        safe_print(f"{s.email} [{session.user_role()}]" if s else "Not signed in.")
    elif cmd == "validate":
        safe_print("valid" if await session.validate_token() else "invalid")
    elif cmd == "register":
        safe_print(await session.register({
            "email": args.email, "password": args.password,
            "first_name": args.first_name, "last_name": args.last_name,
        }))
    elif cmd == "reset-password":
        safe_print(await session.reset_password(args.email))
    elif cmd in ("donations", "watch"):
        filters = {"status": args.status, "limit": args.limit, "offset": args.offset}
        if cmd == "watch":
            await _watch(app, filters)
        else:
            page = await payments.list_donations(filters)
            for d in page.donations:
                _print_donation(d)
            safe_print(f"{len(page.donations)} of {page.total}")
    elif cmd == "donation":
        d = await payments.get_donation(args.id)
        if d is None:
            safe_print("Not found.")
        else:
            _print_donation(d)
    elif cmd == "pay":
        data = await app.pay(args.id)
        safe_print(f"Payment URL: {data.get('payment_url', '-')}")
    elif cmd == "status":
        result = await payments.check_payment_status(args.donation_id, args.order_id)
        safe_print(result.status.name if result.status else "UNKNOWN")
    elif cmd == "resume":
        ret, result = await app.handle_payment_return(args.url)
        safe_print(f"reference={ret.reference_code or '-'} status="
                   f"{result.status.name if result.status else 'UNKNOWN'}")


def _configure(args):
    """Merge the given settings into the saved config file."""
    config = load_config() or {}
    updates = {
        "serverUrl": args.server,
        "returnUrl": args.return_url,
        "confirmationUrl": args.confirmation_url,
    }
    config.update({k: v for k, v in updates.items() if v})
    if args.no_degraded_login:
        config["allowDegradedLogin"] = False
    save_config(config)
    for key, value in sorted(resolve_config().items()):
        safe_print(f"{key:<18} {value}")
    return 0


async def _amain(args):
    app = PortalApp(
        config=resolve_config({"serverUrl": args.server}),
        navigate=lambda url: safe_print(f"Open this URL to pay: {url}"),
    )
    async with app:
        await run_command(app, args)


def main(argv=None):
    """Primary CLI entry point. Returns a process exit code."""
    args = build_parser().parse_args(argv)
    if args.command == "config":
        return _configure(args)
    setup_logging()
    try:
        asyncio.run(_amain(args))
    except PortalError as e:
        log.error("%s failed: [%s] %s", args.command, e.code, e.message)
        safe_print(f"Error: {e.message}")
        return 1
    except KeyboardInterrupt:
        safe_print("\nStopped by user.")
        return 130
    return 0
