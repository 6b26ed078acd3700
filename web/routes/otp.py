"""OTP request and verification routes."""

from fastapi import APIRouter, Depends, Request
from loguru import logger

from courier.services.delivery import DeliveryCoordinator
from courier.utils.masking import mask_phone
from web.dependencies import get_coordinator
from web.models import OTPRequest, OTPResponse, OTPVerifyRequest, OTPVerifyResponse
from web.rate_limit import limiter, otp_rate_limit

router = APIRouter(prefix="/api/otp", tags=["otp"])


@router.post("/request", response_model=OTPResponse)
@limiter.limit(otp_rate_limit)
async def request_otp(
    request: Request,
    body: OTPRequest,
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
) -> OTPResponse:
    """
    Issue a verification code and send it to the phone number.

    The code is returned even when the transport is down so the calling
    flow can show it through another channel.

    Args:
        request: FastAPI request object (required for rate limiter)
        body: Phone number and optional display name
        coordinator: Delivery coordinator

    Returns:
        Code, expiry and delivery outcome
    """
    result = await coordinator.request_otp(
        body.phone_number, body.display_name, wait_timeout=body.wait_timeout
    )
    logger.info(
        f"OTP requested for {mask_phone(result.recipient)}: {result.delivery.status.value}"
    )
    return OTPResponse(**result.to_dict())


@router.post("/verify", response_model=OTPVerifyResponse)
async def verify_otp(
    body: OTPVerifyRequest,
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
) -> OTPVerifyResponse:
    """
    Verify a code.

    Args:
        body: Phone number and code
        coordinator: Delivery coordinator

    Returns:
        Whether the code was valid and, if not, a message for the user
    """
    result = coordinator.verify_otp(body.phone_number, body.code)
    error = result.to_error()
    return OTPVerifyResponse(**result.to_dict(), message=error.message if error else None)
