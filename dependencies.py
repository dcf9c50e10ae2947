"""
FastAPI dependencies: configuration, store handles, the payment flow and the
authenticated identity.
"""
import logging
from typing import Optional

from bson import ObjectId
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings
from errors import AuthorizationError
from mongo_database import USERS
from payments import PaymentFlow
from schemas import Identity

logger = logging.getLogger(__name__)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request):
    return request.app.state.db


def get_ledger_sessions(request: Request) -> Optional[async_sessionmaker]:
    return getattr(request.app.state, "ledger_sessions", None)


def get_payment_flow(
    request: Request,
    db=Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    ledger_sessions: Optional[async_sessionmaker] = Depends(get_ledger_sessions),
) -> PaymentFlow:
    return PaymentFlow(db, settings, request.app.state.http_client, ledger_sessions)


async def get_current_user(
    request: Request,
    db=Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> Identity:
    """
    Resolve the caller from the header set by the upstream auth layer.

    Raises:
        HTTPException: 401 when the header is missing or names no known user
    """
    user_id = request.headers.get(settings.identity_header)
    if not user_id:
        raise HTTPException(status_code=401, detail="No token, authorization denied")

    if not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Token is not valid")

    doc = await db[USERS].find_one({"_id": ObjectId(user_id)})
    if not doc:
        logger.warning(f"Unknown user id in {settings.identity_header}: {user_id}")
        raise HTTPException(status_code=401, detail="Token is not valid")

    return Identity.from_document(doc)


async def require_admin(identity: Identity = Depends(get_current_user)) -> Identity:
    if not identity.is_admin:
        raise AuthorizationError("Access denied. Admin only.")
    return identity
