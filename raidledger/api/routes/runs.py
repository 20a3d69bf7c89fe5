"""
raidledger.api.routes.runs — Run lifecycle endpoints
=====================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from raidledger.api.deps import (
    get_caller,
    get_config,
    get_engine,
    get_session,
    is_system_caller,
    require_system,
)
from raidledger.config import RaidLedgerConfig
from raidledger.database.models import Run
from raidledger.services import run_service

router = APIRouter(prefix="/runs", tags=["runs"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RunCreate(BaseModel):
    guild_id: int
    guild_name: str | None = None
    organizer_id: int
    organizer_username: str | None = None
    organizer_roles: list[int] = Field(default_factory=list)
    dungeon_key: str
    dungeon_label: str
    channel_id: int | None = None
    auto_end_minutes: int | None = None
    party: str | None = None
    location: str | None = None
    description: str | None = None


class ActorBody(BaseModel):
    actor_id: int
    actor_roles: list[int] = Field(default_factory=list)
    guild_id: int | None = None


class StatusUpdate(BaseModel):
    actor_id: int | None = None
    actor_roles: list[int] = Field(default_factory=list)
    guild_id: int | None = None
    status: Literal["open", "live", "ended"]
    is_auto_end: bool = False


class KeyPopBody(ActorBody):
    window_seconds: int | None = None
    popper_id: int | None = None
    popper_roles: list[int] = Field(default_factory=list)


class ParticipationBody(BaseModel):
    user_id: int
    username: str | None = None
    state: Literal["join", "bench", "leave"] = "join"
    guild_id: int | None = None


class ClassBody(BaseModel):
    user_id: int
    username: str | None = None
    class_name: str | None
    guild_id: int | None = None


class KeyReactionBody(BaseModel):
    user_id: int
    key_type: str
    guild_id: int | None = None


class PartyBody(ActorBody):
    party: str


class LocationBody(ActorBody):
    location: str


class ScreenshotBody(ActorBody):
    screenshot_url: str


class MessageBody(ActorBody):
    message_id: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _run_dict(run: Run) -> dict:
    return {
        "id": run.id,
        "guild_id": run.guild_id,
        "organizer_id": run.organizer_id,
        "dungeon_key": run.dungeon_key,
        "dungeon_label": run.dungeon_label,
        "channel_id": run.channel_id,
        "post_message_id": run.post_message_id,
        "description": run.description,
        "party": run.party,
        "location": run.location,
        "screenshot_url": run.screenshot_url,
        "status": run.status,
        "key_pop_count": run.key_pop_count,
        "key_window_ends_at": _iso(run.key_window_ends_at),
        "auto_end_minutes": run.auto_end_minutes,
        "created_at": _iso(run.created_at),
        "started_at": _iso(run.started_at),
        "ended_at": _iso(run.ended_at),
    }


def _counts_dict(counts: run_service.ParticipationCounts) -> dict:
    return {
        "joined": counts.joined,
        "benched": counts.benched,
        "classes": counts.classes,
    }


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def create_run(
    body: RunCreate,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
    cfg: RaidLedgerConfig = Depends(get_config),
):
    run = run_service.create_run(
        engine,
        cfg,
        guild_id=body.guild_id,
        guild_name=body.guild_name,
        organizer_id=body.organizer_id,
        organizer_username=body.organizer_username,
        organizer_role_ids=body.organizer_roles,
        dungeon_key=body.dungeon_key,
        dungeon_label=body.dungeon_label,
        channel_id=body.channel_id,
        auto_end_minutes=body.auto_end_minutes,
        party=body.party,
        location=body.location,
        description=body.description,
    )
    return {"run_id": run.id, "run": _run_dict(run)}


@router.get("/expired")
def list_expired(
    guild_id: int | None = None,
    caller: dict = Depends(require_system),
    session: Session = Depends(get_session),
):
    runs = run_service.list_expired_runs(session, guild_id=guild_id)
    return {"runs": [_run_dict(r) for r in runs]}


@router.get("/{run_id}")
def get_run(
    run_id: int,
    guild_id: int | None = None,
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    run = run_service.get_run(session, run_id, guild_id)
    return {
        "run": _run_dict(run),
        "participants": _counts_dict(run_service.participation_counts(session, run_id)),
        "key_reactions": run_service.key_reaction_counts(session, run_id),
    }


@router.patch("/{run_id}/status")
def update_status(
    run_id: int,
    body: StatusUpdate,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
    cfg: RaidLedgerConfig = Depends(get_config),
):
    if body.is_auto_end and not is_system_caller(caller):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "System token required for auto-end")
    result = run_service.transition(
        engine,
        cfg,
        run_id=run_id,
        actor_id=body.actor_id,
        role_ids=body.actor_roles,
        guild_id=body.guild_id,
        status=body.status,
        is_system_auto_end=body.is_auto_end,
    )
    return {
        "ok": True,
        "status": result.run.status,
        "previous_status": result.previous_status,
        "organizer_credited": result.organizer_credited,
        "raiders_credited": result.raiders_credited,
    }


@router.post("/{run_id}/key-pop")
def key_pop(
    run_id: int,
    body: KeyPopBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
    cfg: RaidLedgerConfig = Depends(get_config),
):
    result = run_service.trigger_checkpoint(
        engine,
        cfg,
        run_id=run_id,
        actor_id=body.actor_id,
        guild_id=body.guild_id,
        window_seconds=body.window_seconds,
        popper_id=body.popper_id,
        popper_role_ids=body.popper_roles,
    )
    return {
        "key_pop_number": result.key_pop_number,
        "key_window_ends_at": _iso(result.window_ends_at),
        "snapshot_size": result.snapshot_size,
        "credited_previous": result.credited_previous,
        "popper_credited": result.popper_credited,
    }


# ---------------------------------------------------------------------------
# Participation
# ---------------------------------------------------------------------------
@router.post("/{run_id}/reactions")
def set_reaction(
    run_id: int,
    body: ParticipationBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    counts = run_service.set_participation(
        engine,
        run_id=run_id,
        user_id=body.user_id,
        state=body.state,
        guild_id=body.guild_id,
        username=body.username,
    )
    return _counts_dict(counts)


@router.patch("/{run_id}/reactions")
def set_class(
    run_id: int,
    body: ClassBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    counts = run_service.set_activity_tag(
        engine,
        run_id=run_id,
        user_id=body.user_id,
        class_name=body.class_name,
        guild_id=body.guild_id,
        username=body.username,
    )
    return _counts_dict(counts)


@router.post("/{run_id}/key-reactions")
def toggle_key(
    run_id: int,
    body: KeyReactionBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    active, offers = run_service.toggle_key_reaction(
        engine,
        run_id=run_id,
        user_id=body.user_id,
        key_type=body.key_type,
        guild_id=body.guild_id,
    )
    return {
        "active": active,
        "key_counts": {key: len(users) for key, users in offers.items()},
        "key_users": offers,
    }


@router.get("/{run_id}/key-reactions")
def list_keys(
    run_id: int,
    guild_id: int | None = None,
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    run_service.get_run(session, run_id, guild_id)
    offers = run_service.key_reaction_counts(session, run_id)
    return {
        "key_counts": {key: len(users) for key, users in offers.items()},
        "key_users": offers,
    }


# ---------------------------------------------------------------------------
# Run details
# ---------------------------------------------------------------------------
@router.patch("/{run_id}/party")
def update_party(
    run_id: int,
    body: PartyBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    run = run_service.update_party(
        engine, run_id=run_id, actor_id=body.actor_id, party=body.party,
        role_ids=body.actor_roles, guild_id=body.guild_id,
    )
    return {"run": _run_dict(run)}


@router.patch("/{run_id}/location")
def update_location(
    run_id: int,
    body: LocationBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    run = run_service.update_location(
        engine, run_id=run_id, actor_id=body.actor_id, location=body.location,
        role_ids=body.actor_roles, guild_id=body.guild_id,
    )
    return {"run": _run_dict(run)}


@router.patch("/{run_id}/screenshot")
def submit_screenshot(
    run_id: int,
    body: ScreenshotBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    run = run_service.submit_screenshot(
        engine, run_id=run_id, actor_id=body.actor_id, screenshot_url=body.screenshot_url,
        role_ids=body.actor_roles, guild_id=body.guild_id,
    )
    return {"run": _run_dict(run)}


@router.patch("/{run_id}/message")
def set_message(
    run_id: int,
    body: MessageBody,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    run = run_service.set_post_message(
        engine, run_id=run_id, actor_id=body.actor_id, message_id=body.message_id,
        role_ids=body.actor_roles, guild_id=body.guild_id,
    )
    return {"run": _run_dict(run)}
