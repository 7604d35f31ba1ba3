"""Idempotency-Key replay wrapper shared by mutating RPC routes."""

import logging
from typing import Any, Awaitable, Callable

from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ProblemDetailsException
from ..services.idempotency_service import IdempotencyService

logger = logging.getLogger(__name__)

REPLAY_HEADER = "Idempotent-Replayed"


async def handle_idempotent_operation(
    method: str,
    idempotency_key: str | None,
    request_body: dict[str, Any],
    operation_func: Callable[[], Awaitable[tuple[int, dict[str, Any]]]],
    db: AsyncSession
) -> JSONResponse:
    """
    Run an operation once per Idempotency-Key and replay its stored response.

    Without a key the operation simply runs. Problem Details errors are stored
    too, so a retried request fails the same way.
    """
    if not idempotency_key:
        status_code, response_dict = await operation_func()
        return JSONResponse(status_code=status_code, content=response_dict)

    idempotency_service = IdempotencyService(db)

    stored = await idempotency_service.lookup(idempotency_key, method, request_body)
    if stored:
        return JSONResponse(
            status_code=stored.status_code,
            content=stored.body,
            headers={**stored.headers, REPLAY_HEADER: "true"}
        )

    try:
        status_code, response_dict = await operation_func()
    except ProblemDetailsException as e:
        await idempotency_service.remember(
            idempotency_key, method, request_body, e.status_code, e.problem_details
        )
        raise

    await idempotency_service.remember(idempotency_key, method, request_body, status_code, response_dict)

    return JSONResponse(status_code=status_code, content=response_dict)
