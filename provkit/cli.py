"""
OAuth login commands.

    provkit gemini-oauth   browser authorization with PKCE and a loopback redirect
    provkit qwen-oauth     device authorization (user code + polling)

Both store the obtained credential set in the provider's section of
``config.yaml``. Exit codes: 0 success, 1 authorization error, 2 timeout,
3 the credential could not be written.
"""

import argparse
import asyncio
import sys
import webbrowser
from typing import Protocol

from provkit.auth.device import DeviceCodeFlow
from provkit.auth.pkce import AuthorizationCodeFlow
from provkit.config.settings import settings
from provkit.config.store import ConfigStore
from provkit.errors import (
    CredentialPersistenceError,
    OAuthError,
    OAuthTimeoutError,
    ProviderError,
)
from provkit.llm.gemini import gemini_oauth_endpoints
from provkit.llm.qwen import qwen_oauth_endpoints
from provkit.types import OAuthCredentialSet
from provkit.utils.logging import get_logger

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_AUTH_ERROR = 1
EXIT_TIMEOUT = 2
EXIT_PERSISTENCE_ERROR = 3


class LoginFlow(Protocol):
    async def run(self) -> OAuthCredentialSet: ...


async def login(flow: LoginFlow, provider: str, store: ConfigStore) -> int:
    """Run one authorization flow and persist the result; returns the exit code."""
    try:
        credential = await flow.run()
    except OAuthTimeoutError as e:
        print(f"[provkit] Authorization timed out: {e}", file=sys.stderr)
        return EXIT_TIMEOUT
    except (OAuthError, ProviderError) as e:
        print(f"[provkit] Authorization failed: {e}", file=sys.stderr)
        return EXIT_AUTH_ERROR

    try:
        store.update_oauth_credential(provider, credential)
    except CredentialPersistenceError as e:
        print(f"[provkit] Could not save credentials: {e}", file=sys.stderr)
        return EXIT_PERSISTENCE_ERROR

    logger.info("oauth_login_completed", provider=provider, credential_id=credential.id)
    print(f"[provkit] {provider} credentials saved to {store.path}")
    return EXIT_OK


def cmd_gemini_oauth(args) -> int:
    endpoints = gemini_oauth_endpoints()
    if not endpoints.client_id:
        print(
            "[provkit] PROVKIT_GEMINI_OAUTH_CLIENT_ID is not set; "
            "create an OAuth client in Google Cloud and export its id and secret.",
            file=sys.stderr,
        )
        return EXIT_AUTH_ERROR
    flow = AuthorizationCodeFlow(
        endpoints,
        timeout=args.timeout,
        credential_id=args.credential_id,
        open_browser=_no_browser if args.no_browser else webbrowser.open,
    )
    return asyncio.run(login(flow, "gemini", ConfigStore(args.config)))


def cmd_qwen_oauth(args) -> int:
    flow = DeviceCodeFlow(
        qwen_oauth_endpoints(),
        max_polls=args.max_polls,
        credential_id=args.credential_id,
        open_browser=None if args.no_browser else webbrowser.open,
    )
    return asyncio.run(login(flow, "qwen", ConfigStore(args.config)))


def _no_browser(url: str) -> bool:
    return False


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="provkit", description="provkit credential commands")
    p.add_argument(
        "--config",
        default=settings.config_path,
        help=f"Config file to store credentials in (default: {settings.config_path})",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    sg = sub.add_parser("gemini-oauth", help="Authorize Gemini through the browser (PKCE)")
    sg.add_argument("--credential-id", default="default", help="Credential set id to store")
    sg.add_argument(
        "--timeout", type=float, default=300.0, help="Seconds to wait for the browser redirect"
    )
    sg.add_argument("--no-browser", action="store_true", help="Only print the authorization URL")
    sg.set_defaults(func=cmd_gemini_oauth)

    sq = sub.add_parser("qwen-oauth", help="Authorize Qwen with a device code")
    sq.add_argument("--credential-id", default="default", help="Credential set id to store")
    sq.add_argument("--max-polls", type=int, default=60, help="Token polls before giving up")
    sq.add_argument("--no-browser", action="store_true", help="Only print the verification URL")
    sq.set_defaults(func=cmd_qwen_oauth)
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\n[provkit] Authorization aborted.", file=sys.stderr)
        return EXIT_AUTH_ERROR


if __name__ == "__main__":
    sys.exit(main())
