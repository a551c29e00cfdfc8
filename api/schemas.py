from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class StartRequest(BaseModel):
    region: str


class StopRequest(BaseModel):
    force: bool = False


class CommandRequest(BaseModel):
    command: str = Field(min_length=1)


class WhitelistRequest(BaseModel):
    action: Literal["add", "remove"]
    username: str
