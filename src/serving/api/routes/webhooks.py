"""
Payment Webhook Endpoint

The body is read raw: signatures cover the exact bytes the provider sent.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from src.serving.api.dependencies import ServiceContainer, get_container

router = APIRouter()


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> JSONResponse:
    raw_body = await request.body()
    outcome = await container.webhooks.handle(provider.lower(), raw_body, request.headers)
    if outcome.status_code != 200:
        return JSONResponse(status_code=outcome.status_code, content=outcome.result)
    return JSONResponse(status_code=200, content=outcome.as_dict())
