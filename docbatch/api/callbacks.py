"""Inbound webhook the worker calls with status updates for a processing."""

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from docbatch.api.schemas import CallbackRequest, CallbackResponse
from docbatch.dispatch.client import SIGNATURE_HEADER, verify_signature
from docbatch.dispatch.payload import CALLBACK_PATH
from docbatch.domain.exceptions import (
    ProcessingNotFoundError,
    StateError,
    ValidationError,
)
from docbatch.logging.logger import Log
from docbatch.reconcile.reconciler import CallbackUpdate
from docbatch.reconcile.reply import extract_result_ref
from docbatch.service import BatchService

router = APIRouter(tags=["callbacks"])


def get_service(request: Request) -> BatchService:
    return request.app.state.service


async def verified_body(request: Request) -> bytes:
    """Raw request body, after checking the HMAC signature when a secret is configured."""
    body = await request.body()
    secret = request.app.state.settings.callback_secret
    if secret and not verify_signature(body, secret, request.headers.get(SIGNATURE_HEADER)):
        Log.warning("Rejected callback with a missing or invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    return body


Service = Annotated[BatchService, Depends(get_service)]
VerifiedBody = Annotated[bytes, Depends(verified_body)]


def _parse(body: bytes) -> tuple[CallbackRequest, dict[str, Any]]:
    try:
        raw = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise HTTPException(status_code=422, detail="Expected a JSON object")
    try:
        return CallbackRequest.model_validate(raw), raw
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc


@router.post(CALLBACK_PATH, response_model=CallbackResponse)
def receive_processing_callback(body: VerifiedBody, service: Service) -> CallbackResponse:
    """Apply a worker status update.

    404 for unknown processings, 409 when the update conflicts with the
    stored state, 422 for malformed bodies.
    """
    payload, raw = _parse(body)
    update = CallbackUpdate(
        processing_id=payload.processing_id,
        status=payload.status.lower(),
        progress=payload.progress,
        result_ref=payload.result_ref or extract_result_ref(raw),
        error_message=payload.error_message,
        estimated_time_minutes=payload.estimated_time,
        payload=raw,
    )
    try:
        outcome = service.handle_callback(update)
    except ProcessingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StateError as exc:
        Log.warning(f"Callback for {update.processing_id} conflicts with stored state: {exc}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return CallbackResponse(
        processing_id=outcome.processing_id,
        outcome=outcome.outcome,
        status=outcome.record.status,
    )
