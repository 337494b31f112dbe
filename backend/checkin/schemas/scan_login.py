from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ScanLoginStartResponse(BaseModel):
    session_id: str = Field(..., serialization_alias="sessionId")
    loginid: str
    qr_code_url: str = Field(..., serialization_alias="qrCodeUrl")
    qrcode: Optional[str] = None
    expire_seconds: Optional[int] = None


class ScanLoginSaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1)
    name: Optional[str] = Field(None, max_length=100)


class ScanLoginCancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1)
