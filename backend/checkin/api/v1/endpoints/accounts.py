import secrets
import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends

from checkin.core.component_provider import get_store, get_verifier
from checkin.core.config import settings
from checkin.core.exceptions import AuthorizationError, DuplicateNameError, ValidationError
from checkin.core.rate_limit import rate_limit_ip
from checkin.schemas.identity import (
    ApiResponse,
    CheckAllStatusResponse,
    CheckStatusRequest,
    DeleteIdentityRequest,
    IdentityResponse,
    ManualIdentityRequest,
)
from checkin.services.identity_store import IdentityStore
from checkin.services.status_verifier import StatusVerifier

logger = structlog.get_logger()

router = APIRouter(prefix="/accounts", tags=["accounts"])


def _identity_payload(identity) -> dict:
    return IdentityResponse.from_snapshot(identity).model_dump(by_alias=True, mode="json")


@router.get("", response_model=ApiResponse)
async def list_accounts(store: IdentityStore = Depends(get_store)):
    identities = await store.list_all()
    return ApiResponse(data=[_identity_payload(identity) for identity in identities])


@router.post("", response_model=ApiResponse)
async def create_account(
    request: ManualIdentityRequest,
    store: IdentityStore = Depends(get_store),
):
    """Store an identity from cookies the operator pasted in by hand."""
    name = request.name.strip()
    if not name:
        raise ValidationError("Name must not be empty")
    if await store.get_by_display_name(name) is not None:
        raise DuplicateNameError(f"Display name {name} is already in use")

    external_user_id = (request.user_id or "").strip() or f"manual_{int(time.time() * 1000)}"
    identity = await store.create(
        external_user_id=external_user_id,
        display_name=name,
        cookies=[item.to_cookie() for item in request.cookies],
    )
    return ApiResponse(message=f"Account {name} added", data=_identity_payload(identity))


@router.delete(
    "/{identity_id}",
    response_model=ApiResponse,
    dependencies=[Depends(rate_limit_ip("delete", settings.DELETE_RATE_LIMIT, settings.DELETE_RATE_WINDOW))],
)
async def delete_account(
    identity_id: int,
    request: Optional[DeleteIdentityRequest] = None,
    store: IdentityStore = Depends(get_store),
):
    password = request.password if request else None
    if not password:
        raise ValidationError("Password is required")
    if not secrets.compare_digest(password.encode("utf-8"), settings.DELETE_PASSWORD.encode("utf-8")):
        logger.warning("Delete rejected, wrong password", identity_id=identity_id)
        raise AuthorizationError("Wrong password")

    await store.delete(identity_id)
    return ApiResponse(message="Account deleted")


@router.post("/check-status", response_model=ApiResponse)
async def check_status(
    request: CheckStatusRequest,
    store: IdentityStore = Depends(get_store),
    verifier: StatusVerifier = Depends(get_verifier),
):
    identity = await store.get_by_id(request.account_id)
    outcome = await verifier.verify_one(identity)
    return ApiResponse(message=outcome.message, data=outcome.to_payload())


@router.post("/check-all-status", response_model=CheckAllStatusResponse)
async def check_all_status(
    store: IdentityStore = Depends(get_store),
    verifier: StatusVerifier = Depends(get_verifier),
):
    identities = await store.list_with_cookies()
    if not identities:
        return CheckAllStatusResponse(message="No accounts to check", results=[])

    outcomes = await verifier.verify_all(identities)
    logged_in = sum(1 for outcome in outcomes if outcome.logged_in)
    return CheckAllStatusResponse(
        message=f"Checked {len(outcomes)} accounts: {logged_in} logged in, {len(outcomes) - logged_in} logged out",
        results=[outcome.to_payload() for outcome in outcomes],
    )


@router.post("/{identity_id}/clear-cookies", response_model=ApiResponse)
async def clear_cookies(identity_id: int, store: IdentityStore = Depends(get_store)):
    await store.update_cookies(identity_id, None)
    return ApiResponse(message="Cookies cleared")
