from fastapi import APIRouter, Depends

from checkin.core.component_provider import get_orchestrator
from checkin.schemas.identity import ApiResponse, IdentityResponse
from checkin.schemas.scan_login import (
    ScanLoginCancelRequest,
    ScanLoginSaveRequest,
    ScanLoginStartResponse,
)
from checkin.services.login_orchestrator import LoginOrchestrator

router = APIRouter(prefix="/scan-login", tags=["scan-login"])


@router.post("/start", response_model=ApiResponse)
async def start_scan_login(orchestrator: LoginOrchestrator = Depends(get_orchestrator)):
    session_id, challenge = await orchestrator.start()
    data = ScanLoginStartResponse(
        session_id=session_id,
        loginid=challenge.challenge_id,
        qr_code_url=challenge.scannable_token,
        qrcode=challenge.qrcode,
        expire_seconds=challenge.expiry_seconds,
    )
    return ApiResponse(message="QR code ready", data=data.model_dump(by_alias=True))


@router.post("/save", response_model=ApiResponse)
async def save_scan_login(
    request: ScanLoginSaveRequest,
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
):
    identity = await orchestrator.save(request.session_id, override_name=request.name)
    return ApiResponse(
        message=f"Account {identity.display_name} added",
        data=IdentityResponse.from_snapshot(identity).model_dump(by_alias=True, mode="json"),
    )


@router.post("/cancel", response_model=ApiResponse)
async def cancel_scan_login(
    request: ScanLoginCancelRequest,
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
):
    cancelled = await orchestrator.cancel(request.session_id)
    return ApiResponse(data={"cancelled": cancelled})
