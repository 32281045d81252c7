#!/usr/bin/env python3
"""Sign in and print every reconciled auth state transition.

Credential sourcing:
- FLEETAUTH_EMAIL
- FLEETAUTH_PASSWORD
- FLEETAUTH_URL / FLEETAUTH_ANON_KEY (fallback: SUPABASE_URL / SUPABASE_ANON_KEY)

Default behavior:
1) start the reconciler (initial session check),
2) sign in with the credentials above,
3) optionally refresh the token and the profile,
4) sign out unless --keep-session is given.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from fleetauth import (  # noqa: E402
    AuthConfig,
    FleetAuthError,
    ReconcilerConfig,
    ReconcilerState,
    SessionReconciler,
    SupabaseAuthClient,
    visible_modules,
)


def _format_state(state: ReconcilerState) -> str:
    profile = state.profile
    return json.dumps(
        {
            "user": state.user.email if state.user else None,
            "profile": profile.full_name if profile else None,
            "role": profile.role_name if profile else None,
            "modules": [str(m) for m in visible_modules(profile)],
            "loading": state.loading,
            "error": state.error,
        },
        ensure_ascii=False,
    )


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--email", default=os.environ.get("FLEETAUTH_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("FLEETAUTH_PASSWORD"))
    parser.add_argument("--refresh-token", action="store_true", help="Refresh the access token after sign-in")
    parser.add_argument("--refresh-profile", action="store_true", help="Re-fetch the profile after sign-in")
    parser.add_argument("--keep-session", action="store_true", help="Do not sign out at the end")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG logging")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    config = AuthConfig.from_env()
    async with SupabaseAuthClient(config) as auth:
        reconciler = SessionReconciler(auth, auth.profile_store(), config=ReconcilerConfig.from_env())
        reconciler.add_listener(lambda state: print(_format_state(state)))
        async with reconciler:
            await reconciler.wait_settled()
            try:
                await reconciler.sign_in(args.email, args.password)
            except FleetAuthError as exc:
                print(f"sign-in failed: {exc}", file=sys.stderr)
                return 1
            await reconciler.wait_settled()

            if args.refresh_token:
                await auth.refresh_session()
                await reconciler.wait_settled()
            if args.refresh_profile:
                await reconciler.refresh_profile()

            if not args.keep_session:
                await reconciler.sign_out()
                await reconciler.wait_settled()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.email or not args.password:
        print("Set FLEETAUTH_EMAIL and FLEETAUTH_PASSWORD (or pass --email/--password)", file=sys.stderr)
        return 2
    try:
        return asyncio.run(_run(args))
    except FleetAuthError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
