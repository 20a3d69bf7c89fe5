"""
raidledger.api.routes.quota — Ledger, quota config & manual credit endpoints
=============================================================================
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from raidledger.api.deps import get_caller, get_config, get_engine, get_session
from raidledger.config import RaidLedgerConfig
from raidledger.database.models import (
    LeaderboardCategory,
    PointOverride,
    QuotaEvent,
    QuotaRoleConfig,
    as_utc,
)
from raidledger.services import ledger_service, quota_service

router = APIRouter(prefix="/guilds/{guild_id}/quota", tags=["quota"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ActorBody(BaseModel):
    actor_id: int
    actor_roles: list[int] = Field(default_factory=list)


class ManualLog(ActorBody):
    user_id: int
    dungeon_key: str
    amount: int = 1


class PointAdjust(ActorBody):
    user_id: int
    amount: Decimal | str
    category: str


class ModerationAward(ActorBody):
    command: str


class RoleConfigUpsert(ActorBody):
    required_points: Decimal | str | None = None
    created_at: datetime | None = None
    reset_at: datetime | None = None
    panel_message_id: int | None = None
    moderation_points: dict[str, Decimal | str] = Field(default_factory=dict)


class OverrideSet(ActorBody):
    category: str
    dungeon_key: str
    points: Decimal | str
    role_id: int | None = None


class OverrideDelete(ActorBody):
    category: str
    dungeon_key: str
    role_id: int | None = None


class StandingsQuery(BaseModel):
    member_ids: list[int]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _role_config_dict(c: QuotaRoleConfig) -> dict:
    return {
        "role_id": c.discord_role_id,
        "required_points": float(c.required_points),
        "created_at": as_utc(c.created_at).isoformat(),
        "reset_at": as_utc(c.reset_at).isoformat(),
        "panel_message_id": c.panel_message_id,
        "moderation_points": {
            "verify": float(c.verify_points),
            "warn": float(c.warn_points),
            "suspend": float(c.suspend_points),
            "modmail_reply": float(c.modmail_reply_points),
            "editname": float(c.editname_points),
            "addnote": float(c.addnote_points),
        },
    }


def _override_dict(o: PointOverride) -> dict:
    return {
        "category": o.category,
        "role_id": o.discord_role_id,
        "dungeon_key": o.dungeon_key,
        "points": float(o.points),
    }


def _event_dict(e: QuotaEvent) -> dict:
    return {
        "id": e.id,
        "user_id": e.actor_user_id,
        "action_type": e.action_type,
        "point_category": e.point_category,
        "subject_id": e.subject_id,
        "dungeon_key": e.dungeon_key,
        "quantity": e.quantity,
        "raider_points": float(e.raider_points),
        "organizer_points": float(e.organizer_points),
        "created_at": as_utc(e.created_at).isoformat(),
    }


# ---------------------------------------------------------------------------
# Manual credit
# ---------------------------------------------------------------------------
@router.post("/log-run")
def log_run(
    guild_id: int,
    body: ManualLog,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    result = quota_service.log_manual_runs(
        engine,
        guild_id=guild_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        user_id=body.user_id,
        dungeon_key=body.dungeon_key,
        count=body.amount,
    )
    return {
        "logged": result.applied,
        "credited_points": float(result.credited_points),
        "total_points": float(result.new_total),
    }


@router.post("/log-key")
def log_key(
    guild_id: int,
    body: ManualLog,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    result = quota_service.log_manual_key_pops(
        engine,
        guild_id=guild_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        user_id=body.user_id,
        dungeon_key=body.dungeon_key,
        count=body.amount,
    )
    return {
        "logged": result.applied,
        "credited_points": float(result.credited_points),
        "total_points": float(result.new_total),
    }


@router.post("/adjust")
def adjust(
    guild_id: int,
    body: PointAdjust,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    result = quota_service.adjust_points(
        engine,
        guild_id=guild_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        user_id=body.user_id,
        amount=body.amount,
        category=body.category,
    )
    return {
        "applied_amount": float(result.applied),
        "new_total": float(result.new_total),
    }


@router.post("/moderation")
def moderation(
    guild_id: int,
    body: ModerationAward,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    points, event = quota_service.award_moderation_points(
        engine,
        guild_id=guild_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        command=body.command,
    )
    return {"points": float(points), "event_id": event.id}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
@router.get("/leaderboard")
def leaderboard(
    guild_id: int,
    category: LeaderboardCategory,
    dungeon_key: str = "all",
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    entries = ledger_service.leaderboard(
        session,
        guild_id,
        category,
        dungeon_key=dungeon_key,
        since=as_utc(since) if since else None,
        until=as_utc(until) if until else None,
        limit=limit,
    )
    return {
        "category": category.value,
        "dungeon_key": dungeon_key,
        "entries": [
            {"user_id": e.user_id, "count": float(e.count) if isinstance(e.count, Decimal) else e.count}
            for e in entries
        ],
    }


@router.get("/stats/{user_id}")
def user_stats(
    guild_id: int,
    user_id: int,
    since: datetime | None = None,
    until: datetime | None = None,
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    stats = ledger_service.get_user_stats(
        session,
        guild_id,
        user_id,
        since=as_utc(since) if since else None,
        until=as_utc(until) if until else None,
    )
    return {
        "user_id": stats.user_id,
        "raider_points": float(stats.raider_points),
        "organizer_points": float(stats.organizer_points),
        "runs_organized": stats.runs_organized,
        "dungeon_completions": stats.dungeon_completions,
        "keys_popped": stats.keys_popped,
        "moderation_actions": stats.moderation_actions,
        "dungeons": stats.dungeons,
    }


@router.get("/events")
def events(
    guild_id: int,
    user_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    rows = ledger_service.list_events(session, guild_id, user_id=user_id, limit=limit)
    return {"events": [_event_dict(e) for e in rows]}


@router.post("/standings/{role_id}")
def standings(
    guild_id: int,
    role_id: int,
    body: StandingsQuery,
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    result = quota_service.get_period_standings(session, guild_id, role_id, body.member_ids)
    return {
        "role_id": result.role_id,
        "period_start": result.window.start.isoformat(),
        "period_end": result.window.end.isoformat(),
        "required_points": float(result.required_points),
        "entries": [
            {
                "user_id": e.user_id,
                "points": float(e.points),
                "runs": e.runs,
                "met_quota": e.met_quota,
            }
            for e in result.entries
        ],
    }


# ---------------------------------------------------------------------------
# Role quota configs
# ---------------------------------------------------------------------------
@router.get("/configs")
def list_configs(
    guild_id: int,
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    configs = quota_service.list_role_configs(session, guild_id)
    return {"configs": [_role_config_dict(c) for c in configs]}


@router.get("/configs/{role_id}")
def get_config_for_role(
    guild_id: int,
    role_id: int,
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    return _role_config_dict(quota_service.get_role_config(session, guild_id, role_id))


@router.put("/configs/{role_id}")
def upsert_config(
    guild_id: int,
    role_id: int,
    body: RoleConfigUpsert,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
    cfg: RaidLedgerConfig = Depends(get_config),
):
    config = quota_service.upsert_role_config(
        engine,
        guild_id=guild_id,
        role_id=role_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        required_points=body.required_points,
        created_at=body.created_at,
        reset_at=body.reset_at,
        panel_message_id=body.panel_message_id,
        moderation_points=body.moderation_points,
        period_days=cfg.quota_period_days,
    )
    return _role_config_dict(config)


@router.post("/configs/{role_id}/reset")
def reset_config_period(
    guild_id: int,
    role_id: int,
    body: ActorBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
    cfg: RaidLedgerConfig = Depends(get_config),
):
    config = quota_service.reset_period(
        engine,
        guild_id=guild_id,
        role_id=role_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        period_days=cfg.quota_period_days,
    )
    return _role_config_dict(config)


@router.delete("/configs/{role_id}", status_code=204)
def delete_config(
    guild_id: int,
    role_id: int,
    body: ActorBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    quota_service.delete_role_config(
        engine,
        guild_id=guild_id,
        role_id=role_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
    )


# ---------------------------------------------------------------------------
# Point overrides
# ---------------------------------------------------------------------------
@router.get("/overrides")
def list_overrides(
    guild_id: int,
    category: str | None = None,
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    rows = quota_service.list_overrides(session, guild_id, category)
    return {"overrides": [_override_dict(o) for o in rows]}


@router.put("/overrides")
def set_override(
    guild_id: int,
    body: OverrideSet,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    override = quota_service.set_override(
        engine,
        guild_id=guild_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        category=body.category,
        dungeon_key=body.dungeon_key,
        points=body.points,
        role_id=body.role_id,
    )
    return _override_dict(override)


@router.post("/overrides/delete")
def delete_override(
    guild_id: int,
    body: OverrideDelete,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    removed = quota_service.delete_override(
        engine,
        guild_id=guild_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        category=body.category,
        dungeon_key=body.dungeon_key,
        role_id=body.role_id,
    )
    return {"removed": removed}
