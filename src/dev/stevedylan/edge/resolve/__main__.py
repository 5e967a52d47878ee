from typing import List
import argparse
import aiohttp
import asyncio
import logging

from dev.stevedylan.edge.errors import ResolutionError
from dev.stevedylan.edge.resolve.handle import resolve_handle_to_remote_server

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="edge-resolve", description="Resolve handles and DIDs to their PDS"
    )
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--handle-resolver-url",
        default="https://public.api.bsky.app",
        help="Directory service used to resolve handles before DNS and HTTPS.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        for subject in subjects:
            try:
                resolved = await resolve_handle_to_remote_server(
                    session,
                    subject,
                    args.get("plc_hostname"),
                    args.get("handle_resolver_url"),
                )
                print(f"{subject} did={resolved.did} handle={resolved.handle} pds={resolved.pds}")
            except ResolutionError as e:
                logger.error("Unable to resolve %s: %s", subject, e)


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
