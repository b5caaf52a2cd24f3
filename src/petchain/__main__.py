"""
Main entrypoint.

Usage:
    python -m petchain serve [--host 0.0.0.0] [--port 8000]   # starts the API
    python -m petchain status <record_id>                      # prints a sync state
    python -m petchain verify <record_id> <record_type> <data.json>
    python -m petchain keygen                                  # new Stellar keypair
"""
import argparse
import asyncio
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("petchain.api.main:app", host=host, port=port)


async def _run_status(record_id: str) -> int:
    from petchain.anchoring.factory import build_anchoring_service
    from petchain.anchoring.service import SyncStateNotFound
    from petchain.db.engine import get_engine

    service = build_anchoring_service(get_engine())
    try:
        state = await service.get_sync_status(record_id)
    except SyncStateNotFound as exc:
        logger.error("%s", exc)
        return 1
    print(json.dumps(state.to_dict(), indent=2))
    return 0


async def _run_verify(record_id: str, record_type: str, data_path: str) -> int:
    from petchain.anchoring.factory import build_anchoring_service
    from petchain.anchoring.service import NotSynced
    from petchain.db.engine import get_engine

    with open(data_path, encoding="utf-8") as f:
        data = json.load(f)

    service = build_anchoring_service(get_engine())
    try:
        report = await service.verify_record(record_id, record_type, data)
    except NotSynced as exc:
        logger.error("%s", exc)
        return 1
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.fully_verified else 2


def _run_keygen() -> None:
    from stellar_sdk import Keypair

    kp = Keypair.random()
    print(f"STELLAR_ACCOUNT_ID={kp.public_key}")
    print(f"STELLAR_SECRET_KEY={kp.secret}")
    logger.info("Fund the account before anchoring (testnet: friendbot).")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="petchain", description="PetChain record anchoring")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    status = sub.add_parser("status", help="Print the sync state of a record")
    status.add_argument("record_id")

    verify = sub.add_parser("verify", help="Verify a record against its anchor")
    verify.add_argument("record_id")
    verify.add_argument("record_type", choices=["vaccination", "treatment", "allergy"])
    verify.add_argument("data_path", help="JSON file with the record's current data")

    sub.add_parser("keygen", help="Generate a Stellar signing keypair")

    args = parser.parse_args(argv)

    if args.command == "serve":
        _run_serve(args.host, args.port)
        return 0
    if args.command == "status":
        return asyncio.run(_run_status(args.record_id))
    if args.command == "verify":
        return asyncio.run(_run_verify(args.record_id, args.record_type, args.data_path))
    if args.command == "keygen":
        _run_keygen()
        return 0
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
