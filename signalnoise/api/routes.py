from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from signalnoise.api.error_handling import (
    log_service_error,
    service_error_response,
    store_error_response,
)
from signalnoise.api.schemas import (
    MagicLinkRequest,
    MagicLinkResponse,
    RevokeAccessResponse,
    SignOutResponse,
    SyncMetaResponse,
    SyncPushRequest,
    SyncPushResponse,
    SyncSnapshotResponse,
    ValidateSessionResponse,
    VerifyMagicLinkResponse,
)
from signalnoise.logging import get_logger
from signalnoise.service.errors import ForbiddenError, NotFoundError, ServiceError
from signalnoise.service.runtime import get_runtime
from signalnoise.service.sessions import ValidatedSession
from signalnoise.service.sync import NO_SNAPSHOT, device_type
from signalnoise.service.tokens import account_hash as hash_account_id
from signalnoise.service.tokens import bearer_token, tokens_equal
from signalnoise.storage.errors import StoreError
from signalnoise.storage.models import SyncSnapshot

logger = get_logger(__name__)

router = APIRouter()

_ACCOUNT_HASH_PATTERN = "^[0-9a-f]{64}$"


async def get_session(authorization: Optional[str] = Header(None)) -> ValidatedSession:
    runtime = get_runtime()
    return await runtime.sessions.validate(bearer_token(authorization))


async def get_sync_session(
    account_hash: str = Path(..., pattern=_ACCOUNT_HASH_PATTERN),
    session: ValidatedSession = Depends(get_session),
) -> ValidatedSession:
    """Bind the bearer session to the hashed account named in the path."""
    if not tokens_equal(hash_account_id(session.account.account_id), account_hash):
        raise ForbiddenError("session does not match account")
    return session


@router.post(
    "/auth/magic-link",
    response_model=MagicLinkResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def request_magic_link(body: MagicLinkRequest):
    """Email a one-time sign-in link to an active premium account.

    Raises:
        404: No account for this email
        403: Account inactive or access revoked
        409: Another device signed in within the lookback window
    """
    runtime = get_runtime()
    issued = await runtime.magic_links.request_link(body.email)
    return MagicLinkResponse.model_validate(
        issued.to_dict(include_link=runtime.settings.dev_links_enabled)
    )


@router.get("/auth/verify-magic-link", response_model=VerifyMagicLinkResponse, tags=["auth"])
async def verify_magic_link(token: Optional[str] = Query(None, max_length=256)):
    """Redeem a magic link token for a new session; each token works once."""
    runtime = get_runtime()
    bundle = await runtime.magic_links.redeem_link(token)
    return VerifyMagicLinkResponse.model_validate({"success": True, "session": bundle.to_dict()})


@router.get("/auth/validate-session", response_model=ValidateSessionResponse, tags=["auth"])
async def validate_session(request: Request, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    try:
        validated = await runtime.sessions.validate(bearer_token(authorization))
    except ServiceError as exc:
        log_service_error(request, exc)
        return service_error_response(exc, valid=False)
    except StoreError as exc:
        return store_error_response(request, exc, valid=False)
    return ValidateSessionResponse.model_validate(validated.to_dict())


@router.post("/auth/sign-out", response_model=SignOutResponse, tags=["auth"])
async def sign_out(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.sessions.sign_out(bearer_token(authorization))
    return SignOutResponse()


@router.post("/auth/revoke-access", response_model=RevokeAccessResponse, tags=["auth"])
async def revoke_access(authorization: Optional[str] = Header(None)):
    """Withdraw the bearer entitlement token's access on every device."""
    runtime = get_runtime()
    result = await runtime.revocation.revoke(bearer_token(authorization))
    return RevokeAccessResponse.model_validate(result.to_dict())


@router.get("/sync/{account_hash}", response_model=SyncSnapshotResponse, tags=["sync"])
async def pull_snapshot(session: ValidatedSession = Depends(get_sync_session)):
    runtime = get_runtime()
    snapshot = await runtime.sync.pull(session.account.account_id)
    if snapshot is None:
        raise NotFoundError("no snapshot stored", detail={"reason": NO_SNAPSHOT})
    return SyncSnapshotResponse.model_validate(snapshot.to_dict())


@router.post("/sync/{account_hash}", response_model=SyncPushResponse, tags=["sync"])
async def push_snapshot(
    body: SyncPushRequest,
    session: ValidatedSession = Depends(get_sync_session),
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    snapshot = SyncSnapshot(
        data=body.data,
        timestamp=body.timestamp,
        first_name=body.first_name,
        language=body.language,
    )
    result = await runtime.sync.push(
        session.account.account_id,
        snapshot,
        device=device_type(user_agent),
        initial=body.sync_type == "initial",
    )
    return SyncPushResponse.model_validate(result.to_dict())


@router.get("/sync/{account_hash}/meta", response_model=SyncMetaResponse, tags=["sync"])
async def sync_metadata(session: ValidatedSession = Depends(get_sync_session)):
    runtime = get_runtime()
    meta = await runtime.sync.metadata(session.account.account_id)
    return SyncMetaResponse.model_validate(meta.to_dict())
