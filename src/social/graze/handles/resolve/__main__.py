from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.graze.handles.errors import HandleServiceException
from social.graze.handles.resolve.identity import IdentityResolver

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="resolve", description="Resolve handles and DIDs to canonical DIDs"
    )
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Also print the handle and PDS from the DID document.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        resolver = IdentityResolver(session, args.get("plc_hostname"))
        for subject in subjects:
            try:
                if args.get("full"):
                    resolved = await resolver.resolve_subject(subject)
                    print(f"{subject} {resolved.did} {resolved.handle} {resolved.pds}")
                else:
                    print(f"{subject} {await resolver.resolve(subject)}")
            except HandleServiceException as e:
                print(f"{subject} {e}")
            except Exception:
                logging.exception("Exception resolving subject %s", subject)


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
