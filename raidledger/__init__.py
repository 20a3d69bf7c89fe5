"""
RaidLedger — Point Accounting for Community Raid Runs
======================================================
Tracks organized runs from posting to completion, snapshots who was present
at every key pop, and turns finished work into durable, auditable point
credits used for role quotas and leaderboards.

Package layout::

    raidledger/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Point defaults, role keys, subject-id builders
    ├── errors.py          # Error taxonomy with machine-readable codes
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + transaction wrapper
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── points.py      # PointAmount value object
    │   ├── resolver.py    # Override selection
    │   ├── lifecycle.py   # Run state machine rules
    │   └── period.py      # Quota period windows
    ├── services/
    │   ├── identity_service.py  # Ensure-exists for guilds and members
    │   ├── authorization.py     # Capability gates
    │   ├── point_resolver.py    # Override lookups
    │   ├── ledger_service.py    # Quota ledger, totals, leaderboards
    │   ├── snapshot_service.py  # Key-pop snapshots + lagged crediting
    │   ├── run_service.py       # Run lifecycle controller
    │   └── quota_service.py     # Role configs, overrides, manual logs
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Service-token minting
        └── routes/        # Run, quota and guild endpoints
"""

__version__ = "0.1.0"
