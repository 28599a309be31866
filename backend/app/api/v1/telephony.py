"""
FastAPI route: Twilio call-status webhook.

    POST /twilio/voice-status   (application/x-www-form-urlencoded)

Twilio retries webhooks that do not answer 2xx, so this always answers
200 once the form is parsed; the decision is in the body.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Form

from backend.app.api.deps import Services, get_services
from backend.app.api.schemas import CallCallbackAck

router = APIRouter(prefix="/twilio", tags=["telephony"])


@router.post(
    "/voice-status",
    response_model=CallCallbackAck,
    summary="Twilio voice status callback",
)
def voice_status(
    call_status: Optional[str] = Form(None, alias="CallStatus"),
    call_duration: Optional[str] = Form(None, alias="CallDuration"),
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    answered_by: Optional[str] = Form(None, alias="AnsweredBy"),
    services: Services = Depends(get_services),
):
    outcome = services.listener.handle_call_callback(
        call_status, call_duration, call_sid=call_sid, answered_by=answered_by,
    )
    return CallCallbackAck(
        human_answer=outcome.human_answer,
        locked_devices=outcome.locked_devices,
    )
