"""
Account lifecycle router: creation hook from the auth provider, profile, deletion.
"""

import secrets
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.account import Account
from routers.auth_scope import get_current_account
from services.accounts import AccountService
from services.session_token import create_session_token

router = APIRouter()


class SyncAccountRequest(BaseModel):
    account_id: Optional[str] = Field(default=None, max_length=64)
    email: str = Field(min_length=3, max_length=320)
    name: Optional[str] = Field(default=None, max_length=255)


class AccountResponse(BaseModel):
    account_id: str
    email: str
    name: Optional[str] = None
    credits: int
    has_received_bonus: bool
    bonus_emails: List[str] = []
    is_admin: bool = False


class SyncAccountResponse(BaseModel):
    account: AccountResponse
    created: bool
    welcome_bonus_granted: bool
    session_token: str
    session_expires_at: int


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        account_id=account.id,
        email=account.email,
        name=account.name,
        credits=int(account.credits or 0),
        has_received_bonus=bool(account.has_received_bonus),
        bonus_emails=[str(item) for item in (account.bonus_emails or [])],
        is_admin=bool(account.is_admin),
    )


def _verify_provider_secret(provided: Optional[str]) -> None:
    expected = (settings.AUTH_PROVIDER_SECRET or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Account sync is not configured.")
    if not provided or not secrets.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid auth provider secret.")


@router.post("/sync", response_model=SyncAccountResponse)
async def sync_account(
    request: SyncAccountRequest,
    x_auth_provider_secret: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Create the account on first sight (granting the welcome bonus) and issue a session."""
    _verify_provider_secret(x_auth_provider_secret)

    account_id = (request.account_id or "").strip() or str(uuid.uuid4())
    try:
        account, created, granted = await AccountService(db).sync_account(account_id, request.email, request.name)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email is already registered to another account.") from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    session = create_session_token(account.id, account.email)
    return SyncAccountResponse(
        account=_account_response(account),
        created=created,
        welcome_bonus_granted=granted,
        session_token=session.token,
        session_expires_at=session.expires_at,
    )


@router.get("/me", response_model=AccountResponse)
async def get_me(account: Account = Depends(get_current_account)):
    return _account_response(account)


@router.delete("/me")
async def delete_me(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Delete the account; the email keeps its bonus history."""
    account_id = account.id
    await AccountService(db).delete_account(account_id)
    return {"deleted": True, "account_id": account_id}
