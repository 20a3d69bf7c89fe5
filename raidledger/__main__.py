"""
Entry point: ``python -m raidledger``

Loads ``.env``, configures logging, verifies the schema and serves the API with uvicorn on the
port from ``config.yaml``.
"""

from __future__ import annotations

import logging
import os

import uvicorn
from dotenv import load_dotenv

from raidledger.config import load_config
from raidledger.database.engine import create_db_engine, init_db


def main() -> None:
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet down noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    cfg = load_config(os.getenv("RAIDLEDGER_CONFIG", "config.yaml"))
    logging.getLogger("raidledger").info(
        "Starting RaidLedger for %s on port %d", cfg.community_name, cfg.api_port
    )
    # Tables are normally managed by Alembic; this is the dev safety net.
    engine = create_db_engine()
    init_db(engine)
    engine.dispose()

    uvicorn.run(
        "raidledger.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=cfg.api_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
