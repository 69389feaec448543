#!/usr/bin/env python3
"""
python -m hypehaus serve        run the API with uvicorn
python -m hypehaus init-db      create the tables
python -m hypehaus init-tiers   import/update ticket tiers from a catalog
python -m hypehaus sweep        one reconciler pass, then exit

Catalog format (JSON):

    {"event_id": "evt_1",
     "currency": "INR",
     "tiers": [{"id": "ga", "name": "General", "price_minor_units": 150000,
                "total_quantity": 500}, ...]}

A tier may carry its own event_id/currency to override the top level.
"""
import argparse
import asyncio
import sys
from typing import List

import orjson
from loguru import logger

from .config import Settings
from .errors import DomainError
from .infra.sql import database_for
from .logs import configure_logging
from .model import ledger
from .model.domain import TicketTier
from .model.reconciler import SettlementReconciler


def parse_catalog(raw: bytes, default_currency: str) -> List[TicketTier]:
    doc = orjson.loads(raw)
    if isinstance(doc, list):
        doc = {"tiers": doc}
    event_id = doc.get("event_id")
    currency = doc.get("currency", default_currency)

    tiers = []
    for t in doc.get("tiers", []):
        ev = t.get("event_id", event_id)
        if not ev:
            raise ValueError(f"tier {t.get('id')!r} has no event_id")
        tiers.append(TicketTier(
            id=str(t["id"]),
            event_id=str(ev),
            name=str(t.get("name", t["id"])),
            price_minor_units=int(t["price_minor_units"]),
            currency=str(t.get("currency", currency)).upper(),
            total_quantity=int(t["total_quantity"]),
        ))
    return tiers


async def init_db(settings: Settings) -> None:
    database = database_for(settings)
    try:
        await database.create_schema()
    finally:
        await database.dispose()
    logger.info("schema ready at {}", settings.database_url)


async def init_tiers(settings: Settings, path: str) -> int:
    with open(path, "rb") as f:
        tiers = parse_catalog(f.read(), settings.default_currency)

    database = database_for(settings)
    failed = 0
    try:
        await database.create_schema()
        async with database.connect() as db:
            for tier in tiers:
                try:
                    saved = await ledger.upsert_tier(db, tier)
                except DomainError as e:
                    logger.error("tier {}: {}", tier.id, e.message)
                    failed += 1
                    continue
                logger.info(
                    "tier {} ({}): {} {} x {}, {} available",
                    saved.id, saved.name, saved.price_minor_units,
                    saved.currency, saved.total_quantity, saved.available,
                )
    finally:
        await database.dispose()
    return failed


async def sweep_once(settings: Settings) -> None:
    database = database_for(settings)
    try:
        reconciler = SettlementReconciler(
            database,
            abandoned_grace_seconds=settings.abandoned_grace_seconds,
        )
        report = await reconciler.sweep()
    finally:
        await database.dispose()
    print(
        f"expired={report.expired} abandoned={report.abandoned} "
        f"orphaned={report.orphaned} skipped={report.skipped}"
    )


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(
        prog="hypehaus",
        description="Ticket inventory, checkout and issuance service",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument(
        "--workers", type=int, default=1,
        help="uvicorn worker processes (set REDIS_URL to share the "
             "reconciler lock)"
    )

    sub.add_parser("init-db", help="create database tables")

    tiers = sub.add_parser("init-tiers", help="import tiers from a catalog")
    tiers.add_argument("catalog", help="path to catalog JSON")

    sub.add_parser("sweep", help="run one reconciler pass")

    args = ap.parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.cmd == "serve":
        import uvicorn
        uvicorn.run(
            "hypehaus.server:app",
            host=args.host,
            port=args.port,
            workers=args.workers,
            log_config=None,
        )
        return 0
    if args.cmd == "init-db":
        asyncio.run(init_db(settings))
        return 0
    if args.cmd == "init-tiers":
        failed = asyncio.run(init_tiers(settings, args.catalog))
        return 1 if failed else 0
    if args.cmd == "sweep":
        asyncio.run(sweep_once(settings))
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(main())
