"""Registration API."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from logtopost.core.auth import issue_token
from logtopost.features.users.service import register_user

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterIn(BaseModel):
    email: str
    password: str


@router.post("/register")
def register(data: RegisterIn, request: Request):
    state = request.app.state
    user, entitlement = register_user(
        data.email,
        data.password,
        config=state.entitlement_config,
        store=state.entitlement_store,
        evaluator=state.trial_evaluator,
    )
    token = issue_token(user.id)
    if entitlement.has_had_trial:
        message = "Account created successfully. Previous trial detected - please subscribe to continue."
    else:
        message = "Account created successfully. Your free trial has started."

    response = JSONResponse(
        status_code=201,
        content={
            "message": message,
            "token": token,
            "user": {
                "id": user.id,
                "email": user.email,
                "subscription_status": entitlement.status.value,
                "plan": entitlement.plan.value,
                "has_had_trial": entitlement.has_had_trial,
                "trial_ends_at": entitlement.trial_ends_at.isoformat() if entitlement.trial_ends_at else None,
            },
        },
    )
    response.set_cookie("token", token, httponly=True, samesite="lax")
    return response
