import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from app.schemas.payment import PaymentAttemptResponse, PaymentCreate, PaymentResponse
from retry_service.exceptions import DuplicateKeyError, PaymentFailedError
from retry_service.models import AttemptState, PaymentAttempt
from retry_service.scheduler import RetryScheduler

router = APIRouter()
logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def get_scheduler(request: Request) -> RetryScheduler:
    return request.app.state.scheduler


def _build_response(attempts: list[PaymentAttempt]) -> PaymentResponse:
    latest = attempts[-1]
    return PaymentResponse(
        payment_id=latest.payment_id,
        payment_external_key=latest.payment_external_key,
        state=latest.state_name,
        next_retry_at=latest.retry_due_at if latest.state_name == AttemptState.RETRIED else None,
        attempts=[PaymentAttemptResponse.model_validate(a) for a in attempts],
    )


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def submit_payment(
    body: PaymentCreate,
    request: Request,
    response: Response,
    scheduler: RetryScheduler = Depends(get_scheduler),
) -> PaymentResponse:
    request_id = _request_id(request)
    logger.info(
        "Received submit_payment request",
        extra={"request_id": request_id, "payment_external_key": body.payment_external_key},
    )
    try:
        await scheduler.submit_payment(
            payment_external_key=body.payment_external_key,
            transaction_external_key=body.transaction_external_key,
            amount=body.amount,
            currency=body.currency,
            properties=body.properties,
        )
    except DuplicateKeyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except PaymentFailedError as exc:
        if exc.decision.state == AttemptState.ABORTED:
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc))
        # First attempt failed but a retry is scheduled
        response.status_code = status.HTTP_202_ACCEPTED

    attempts = await scheduler.get_attempts(body.payment_external_key)
    return _build_response(attempts)


@router.get("/{payment_external_key}", response_model=PaymentResponse)
async def get_payment(
    payment_external_key: str,
    scheduler: RetryScheduler = Depends(get_scheduler),
) -> PaymentResponse:
    attempts = await scheduler.get_attempts(payment_external_key)
    if not attempts:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return _build_response(attempts)


@router.get("/{payment_external_key}/attempts", response_model=list[PaymentAttemptResponse])
async def get_attempts(
    payment_external_key: str,
    scheduler: RetryScheduler = Depends(get_scheduler),
) -> list[PaymentAttemptResponse]:
    attempts = await scheduler.get_attempts(payment_external_key)
    if not attempts:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return [PaymentAttemptResponse.model_validate(a) for a in attempts]
