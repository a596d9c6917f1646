"""
safevoice.api.routes.memorial — Memorial wall
==============================================
"""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from safevoice.api.deps import Runtime, StudentId

router = APIRouter(prefix="/memorial", tags=["memorial"])


class TributeIn(BaseModel):
    person_name: str
    message: str


@router.get("/tributes")
async def list_tributes(runtime: Runtime):
    return [t.to_dict() for t in runtime.memorial.list_tributes()]


@router.post("/tributes", status_code=201)
async def create_tribute(body: TributeIn, runtime: Runtime, student_id: StudentId):
    return runtime.memorial.create_tribute(student_id, body.person_name, body.message).to_dict()


@router.post("/tributes/{tribute_id}/candles", status_code=201)
async def light_candle(tribute_id: str, runtime: Runtime, student_id: StudentId):
    candle = runtime.memorial.light_candle(tribute_id, student_id)
    tribute = runtime.memorial.get_tribute(tribute_id)
    return {**candle.to_dict(), "candle_count": len(tribute.candles)}
