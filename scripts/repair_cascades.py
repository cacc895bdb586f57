import argparse
import asyncio
import json
import os
import sys

from dotenv import load_dotenv

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))


async def repair(group_ids: list[str]) -> dict:
    from hunter.core.db import SessionLocal, init_db
    from hunter.core.http import init_http_clients, close_http_clients
    from hunter.jobs import repair_cascades
    from hunter.services import settling

    await init_db()
    await init_http_clients()
    try:
        async with SessionLocal() as s:
            if not group_ids:
                return await repair_cascades.run(s)
            out = {}
            for gid in group_ids:
                outcome = await settling.repair_cascade(s, gid)
                out[gid] = outcome.to_dict()
            return out
    finally:
        await close_http_clients()


def main():
    parser = argparse.ArgumentParser(description="Re-run the cycle cascade for settled jackpot groups")
    parser.add_argument(
        "group_ids",
        nargs="*",
        help="Group ids to repair; without ids, every failed cascade under the retry limit is retried",
    )
    parser.add_argument("--env-file", default=".env", help="Env file loaded before settings are read")
    args = parser.parse_args()
    load_dotenv(args.env_file)
    result = asyncio.run(repair(args.group_ids))
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
