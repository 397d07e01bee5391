from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketchat.repositories.device_repository import DeviceRepository
from marketchat.utils.dependencies import get_current_actor, get_device_repository


router = APIRouter(prefix="/devices", tags=["push"])


class RegisterDeviceRequest(BaseModel):

    platform: Literal["fcm", "webpush"]
    token: str = Field(min_length=1)


@router.post("/register")
async def register_device(payload: RegisterDeviceRequest, actor_id: str = Depends(get_current_actor), repo: DeviceRepository = Depends(get_device_repository)):
    doc = await repo.register(actor_id, payload.platform, payload.token)
    return {"ok": True, "device": {"platform": doc["platform"], "token": doc["token"]}}
