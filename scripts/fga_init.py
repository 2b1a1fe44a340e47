from __future__ import annotations

import argparse
import asyncio
import sys

from assistant0.core.config import get_settings
from assistant0.services.authz.fga import OpenFgaAuthorizer, grant_owner, share_document


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Write the document authorization model to OpenFGA")
    parser.add_argument("--owner", default=None, help="Email to grant owner on --document")
    parser.add_argument("--document", default=None, help="Document id for seeded grants")
    parser.add_argument("--share", nargs="*", default=[], help="Viewer emails for --document")
    return parser


async def _init(args: argparse.Namespace) -> int:
    authorizer = OpenFgaAuthorizer(settings=get_settings())
    model_id = await authorizer.write_authorization_model()
    print(f"authorization_model_id={model_id}")
    print("Set FGA_MODEL_ID to pin checks to this model.")

    if args.document:
        if args.owner:
            await grant_owner(authorizer, args.owner, args.document)
        if args.share:
            await share_document(authorizer, args.document, args.share)
        print(f"seeded_grants document={args.document}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_init(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"fga_init failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
