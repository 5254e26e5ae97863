"""Pydantic request schemas for the game API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


VoteValue = Literal["REAL", "BOT"]


class RegisterRequest(BaseModel):
    """Request body for joining the current cycle."""

    handle: str = Field(min_length=1, max_length=64)


class IdentityRequest(BaseModel):
    """Request body for leave/ready calls."""

    identity: int


class VoteRequest(BaseModel):
    """Request body for submitting or toggling a vote."""

    match_id: str
    identity: int
    vote: VoteValue


class LockVoteRequest(BaseModel):
    match_id: str
    identity: int


class ChatRequest(BaseModel):
    """Request body for a participant chat message."""

    match_id: str
    identity: int
    text: str = Field(min_length=1, max_length=500)


class AgentReplyRequest(BaseModel):
    """Request body an external agent signs and posts."""

    match_id: str
    bot_identity: int
    text: str = Field(min_length=1, max_length=500)


class PersonaRequest(BaseModel):
    """Admin request body for registering a persona."""

    persona_id: str = Field(min_length=1)
    identity: int
    username: str = Field(min_length=1)
    display_name: str | None = None
    avatar_url: str | None = None
    style: str = "conversational"
    system_prompt: str | None = None
    is_external: bool = False
    controller: str | None = None
    model: str | None = None
    recent_posts: list[str] = Field(default_factory=list)
