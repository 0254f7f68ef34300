from fastapi import APIRouter, Depends, HTTPException, Query, Request, Header, Response
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address
from typing import Annotated
import asyncio
import json
import logging

from pachka_stats.client import PachkaClient, PachkaError, PachkaUnavailableError
from pachka_stats.config import get_settings
from pachka_stats.models.schemas import (
    AnalyticsRequest, AnalyticsResult, Chat, ComparisonRequest, CurrentUser,
    HealthResponse, MessageAnalyticsRequest, ProgressEvent
)
from pachka_stats.services.analytics_service import (
    run_analytics, run_analytics_for_messages, run_comparison
)
from pachka_stats.services.export_service import export_filename, export_message_stats_csv

router = APIRouter(prefix="/api/v1", tags=["analytics"])
limiter = Limiter(key_func=get_remote_address)
logger = logging.getLogger(__name__)

# API Version
API_VERSION = "1.0.0"


def add_api_version_headers(response: Response) -> None:
    """Add API versioning headers to response"""
    response.headers["X-API-Version"] = API_VERSION
    response.headers["X-API-Deprecation"] = "false"


async def get_pachka_client(
    request: Request,
    authorization: Annotated[str | None, Header()] = None
) -> PachkaClient:
    """Build a client bound to the caller's Pachka token"""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Pachka API token required")
    token = authorization[len("bearer "):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Pachka API token required")
    return PachkaClient(token, request.app.state.http_client)


PachkaDep = Annotated[PachkaClient, Depends(get_pachka_client)]


@router.get("/health", response_model=HealthResponse)
@limiter.limit("120/minute")
async def health_check(
    request: Request,
    response: Response,
    x_health_token: Annotated[str | None, Header()] = None
):
    """
    Health check endpoint. Optionally protected by HEALTH_CHECK_TOKEN env var.
    If token is set, requires X-Health-Token header to see configuration.
    """
    settings = get_settings()
    add_api_version_headers(response)

    if settings.health_check_token and x_health_token != settings.health_check_token:
        return HealthResponse(status="ok", pachka_api_url="", max_concurrent_requests=0)

    return HealthResponse(
        status="healthy",
        pachka_api_url=settings.pachka_api_url,
        max_concurrent_requests=settings.max_concurrent_requests
    )


@router.get("/me", response_model=CurrentUser)
@limiter.limit("30/minute")
async def current_user(request: Request, client: PachkaDep):
    """Validate the token and return its owner"""
    return await client.get_current_user()


@router.get("/chats", response_model=list[Chat])
@limiter.limit("30/minute")
async def search_chats(
    request: Request,
    client: PachkaDep,
    chat_id: int | None = Query(None, ge=1),
    message_id: int | None = Query(None, ge=1),
    channel: bool | None = None,
    public: bool | None = None
):
    """Find chats by id, by one of their messages, or by type"""
    if message_id is not None:
        message = await client.get_message(message_id)
        if message.chat_id is None:
            raise HTTPException(status_code=404, detail=f"Message {message_id} has no chat")
        return [await client.get_chat(message.chat_id)]
    if chat_id is not None:
        return [await client.get_chat(chat_id)]
    return await client.list_chats(channel=channel, public=public)


@router.post("/analytics", response_model=AnalyticsResult)
@limiter.limit("10/minute")
async def chat_analytics(request: Request, body: AnalyticsRequest, client: PachkaDep):
    """Engagement analytics for chats over a date range"""
    return await run_analytics(
        client, body.chat_ids, body.date_range,
        on_progress=lambda p: logger.debug(f"Analytics progress: {p}%")
    )


@router.post("/analytics/stream")
@limiter.limit("10/minute")
async def chat_analytics_stream(request: Request, body: AnalyticsRequest, client: PachkaDep):
    """Same as /analytics, streamed as NDJSON progress events followed by the result"""
    queue: asyncio.Queue = asyncio.Queue()

    async def produce():
        try:
            result = await run_analytics(
                client, body.chat_ids, body.date_range,
                on_progress=lambda p: queue.put_nowait(ProgressEvent(progress=p).model_dump_json())
            )
            queue.put_nowait(json.dumps({"result": result.model_dump(mode="json", by_alias=True)}))
        except PachkaUnavailableError as e:
            logger.error(f"Streaming analytics failed: {e}")
            queue.put_nowait(json.dumps({"error": "Could not reach chat platform"}))
        except PachkaError as e:
            logger.error(f"Streaming analytics failed: {e}")
            queue.put_nowait(json.dumps({"error": str(e)}))
        except Exception:
            logger.exception("Streaming analytics crashed")
            queue.put_nowait(json.dumps({"error": "Internal error"}))
        finally:
            queue.put_nowait(None)

    async def iter_events():
        task = asyncio.create_task(produce())
        try:
            while True:
                line = await queue.get()
                if line is None:
                    break
                yield line + "\n"
        finally:
            # Client went away: stop fetching
            task.cancel()

    return StreamingResponse(iter_events(), media_type="application/x-ndjson")


@router.post("/analytics/messages", response_model=AnalyticsResult)
@limiter.limit("20/minute")
async def message_analytics(request: Request, body: MessageAnalyticsRequest, client: PachkaDep):
    """Engagement of individual messages"""
    result = await run_analytics_for_messages(client, body.message_ids)
    if not result.message_stats:
        raise HTTPException(status_code=404, detail="No messages found for the given criteria")
    return result


@router.post("/analytics/compare", response_model=AnalyticsResult)
@limiter.limit("10/minute")
async def compare_periods(request: Request, body: ComparisonRequest, client: PachkaDep):
    """Attach a comparison with another period (previous one by default)"""
    try:
        return await run_comparison(client, body.current, body.comparison_range)
    except ValidationError:
        # Malformed data surfaces as a 500
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/analytics/export")
@limiter.limit("20/minute")
async def export_analytics(request: Request, body: AnalyticsResult):
    """Download the per-message table as CSV.

    Same columns as the spreadsheet export of the web client, but written as
    CSV instead of an .xlsx workbook.
    """
    try:
        content = export_message_stats_csv(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'}
    )
