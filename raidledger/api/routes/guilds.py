"""
raidledger.api.routes.guilds — Role capability mapping
=======================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from raidledger.api.deps import get_caller, get_engine, get_session
from raidledger.services import authorization

router = APIRouter(prefix="/guilds/{guild_id}/roles", tags=["guilds"])


class RoleMappingUpdate(BaseModel):
    actor_id: int
    actor_roles: list[int] = Field(default_factory=list)
    actor_is_guild_admin: bool = False
    roles: dict[str, int | None]


@router.get("")
def get_roles(
    guild_id: int,
    caller: dict = Depends(get_caller),
    session: Session = Depends(get_session),
):
    return {"roles": authorization.get_role_mapping(session, guild_id)}


@router.put("")
def put_roles(
    guild_id: int,
    body: RoleMappingUpdate,
    caller: dict = Depends(get_caller),
    engine=Depends(get_engine),
):
    roles = authorization.update_role_mapping(
        engine,
        guild_id=guild_id,
        actor_id=body.actor_id,
        actor_role_ids=body.actor_roles,
        actor_is_guild_admin=body.actor_is_guild_admin,
        mapping=body.roles,
    )
    return {"roles": roles}
