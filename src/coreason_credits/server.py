# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

import hmac
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from coreason_credits.config import CreditsConfig
from coreason_credits.estimation import CompletionRequest
from coreason_credits.exceptions import (
    InsufficientCreditError,
    ReservationNotFoundError,
    StorageUnavailableError,
    WorkExecutionError,
)
from coreason_credits.executor import LiteLLMExecutor
from coreason_credits.manager import CreditManager
from coreason_credits.models import AllotmentClass, CreditBucket, ResolvedIdentity
from coreason_credits.utils.logger import logger


class ChatRequest(BaseModel):  # type: ignore[misc]
    message: str = Field(min_length=1)
    model: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, ge=1)


class SignupEvent(BaseModel):  # type: ignore[misc]
    event_id: str = Field(min_length=1)
    type: str
    user_id: str = Field(min_length=1)


class PaymentCapture(BaseModel):  # type: ignore[misc]
    capture_id: str = Field(min_length=1)
    amount: int = Field(gt=0)


async def get_identity(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
) -> ResolvedIdentity:
    """Authenticated users are keyed by user id, guests by session id."""
    if x_user_id and x_user_id.strip():
        return ResolvedIdentity(identity=x_user_id.strip(), allotment=AllotmentClass.REGISTERED)

    if x_session_id and x_session_id.strip():
        return ResolvedIdentity(identity=f"anon:{x_session_id.strip()}", allotment=AllotmentClass.ANONYMOUS)

    raise HTTPException(status_code=401, detail="Missing identity")


async def verify_payment_secret(x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret")) -> None:
    """Only the payment provider, holding the shared secret, may report captures."""
    manager: CreditManager = app.state.credits
    expected = manager.config.payment_webhook_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Payment capture is not configured")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Initializing CreditManager...")
    config = CreditsConfig()
    credit_manager = CreditManager(config)
    credit_manager.start()

    app.state.credits = credit_manager
    app.state.executor = LiteLLMExecutor(chars_per_token=config.chars_per_token)
    yield
    logger.info("Closing CreditManager...")
    await credit_manager.close()


app = FastAPI(lifespan=lifespan)


@app.get("/balance")
async def get_balance(who: ResolvedIdentity = Depends(get_identity)) -> Dict[str, int]:
    manager: CreditManager = app.state.credits
    try:
        snapshot = await manager.get_balance(who.identity, who.allotment)
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail="Credit store unavailable") from e
    return snapshot.model_dump()


@app.post("/chat")
async def chat(request: ChatRequest, who: ResolvedIdentity = Depends(get_identity)) -> Dict[str, Any]:
    manager: CreditManager = app.state.credits
    completion = CompletionRequest.from_message(
        request.model or manager.config.default_model, request.message, max_tokens=request.max_tokens
    )
    try:
        outcome = await manager.run(who.identity, completion, app.state.executor, who.allotment)
    except InsufficientCreditError as e:
        raise HTTPException(
            status_code=402,
            detail={"error": "insufficient_credit", "available": e.available, "requested": e.requested},
        ) from e
    except ReservationNotFoundError as e:
        raise HTTPException(status_code=409, detail="Reservation is no longer open") from e
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail="Credit store unavailable") from e
    except WorkExecutionError as e:
        raise HTTPException(status_code=502, detail="Completion request failed") from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return {"reply": outcome.result, "balance": outcome.settlement.model_dump()}


@app.post("/webhooks/signup")
async def signup_webhook(event: SignupEvent) -> Dict[str, Any]:
    """Grant the signup bonus once per user.created event. Signature verification happens upstream."""
    manager: CreditManager = app.state.credits
    if event.type != "user.created":
        return {"status": "ignored"}

    try:
        snapshot = await manager.grant_once(
            f"signup:{event.event_id}",
            event.user_id,
            manager.config.signup_bonus,
            CreditBucket.FREE,
            allotment=AllotmentClass.REGISTERED,
        )
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail="Credit store unavailable") from e

    if snapshot is None:
        return {"status": "duplicate"}
    logger.info("Signup bonus of {} granted to {}", manager.config.signup_bonus, event.user_id)
    return {"status": "granted", "balance": snapshot.model_dump()}


@app.post("/payments/capture", dependencies=[Depends(verify_payment_secret)])
async def payment_capture(capture: PaymentCapture, who: ResolvedIdentity = Depends(get_identity)) -> Dict[str, Any]:
    """
    Credit a captured payment to the paid bucket, once per capture id.

    The amount is trusted as sent, so this endpoint is only for the verified
    payment provider presenting the shared X-Webhook-Secret.
    """
    manager: CreditManager = app.state.credits
    try:
        snapshot = await manager.grant_once(
            f"payment:{capture.capture_id}", who.identity, capture.amount, CreditBucket.PAID, who.allotment
        )
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail="Credit store unavailable") from e

    if snapshot is None:
        return {"status": "duplicate"}
    return {"status": "granted", "balance": snapshot.model_dump()}


@app.get("/health")
async def health_check() -> Dict[str, str]:
    manager: CreditManager = app.state.credits
    try:
        await manager.health()
        return {"status": "healthy", "store": "connected"}
    except StorageUnavailableError as e:
        raise HTTPException(status_code=503, detail="Credit store connection failed") from e
