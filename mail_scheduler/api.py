"""
FastAPI application factory and HTTP schemas for the mail scheduler.

The module exposes a `create_app` function that builds the REST API used by
the host application to manage snoozes, scheduled sends and reminders, and to
poke the scheduler. Authentication is enforced through a configurable API
token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Union, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .models import ScheduledSendStatus, SendAttachment

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class AccountPayload(BaseModel):
    """SMTP account used to deliver scheduled sends."""
    id: str
    email: str
    name: Optional[str] = None
    host: str
    port: int
    user: Optional[str] = None
    password: Optional[str] = None
    use_tls: Optional[bool] = None


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class RunNowResponse(CommandStatus):
    started: bool = False


class AccountInfo(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    host: str
    port: int
    user: Optional[str] = None
    use_tls: Optional[bool] = None
    created_at: Optional[str] = None


class AccountsResponse(CommandStatus):
    accounts: List[AccountInfo]


class SnoozePayload(BaseModel):
    """Snooze ``email_id`` until the given epoch timestamp."""
    id: Optional[str] = None
    email_id: str
    snooze_until: int


class UnsnoozePayload(BaseModel):
    email_id: str


class SnoozeRecord(BaseModel):
    id: str
    email_id: str
    account_id: str
    original_folder_id: str
    snooze_until: int
    created_at: Optional[str] = None


class SnoozeResponse(CommandStatus):
    snoozed: SnoozeRecord


class SnoozedResponse(CommandStatus):
    snoozed: List[SnoozeRecord]


class ScheduledSendPayload(BaseModel):
    """Outbound message to deliver at ``send_at`` (epoch seconds)."""
    id: Optional[str] = None
    account_id: str
    to: Union[List[str], str]
    cc: Optional[Union[List[str], str]] = None
    bcc: Optional[Union[List[str], str]] = None
    subject: str = ""
    body_html: str = ""
    attachments: Optional[List[SendAttachment]] = None
    draft_id: Optional[str] = None
    send_at: int


class ScheduledSendUpdate(BaseModel):
    """Fields that may be edited while a scheduled send is still pending."""
    to: Optional[Union[List[str], str]] = None
    cc: Optional[Union[List[str], str]] = None
    bcc: Optional[Union[List[str], str]] = None
    subject: Optional[str] = None
    body_html: Optional[str] = None
    attachments: Optional[List[SendAttachment]] = None
    send_at: Optional[int] = None


class ScheduledSendRecord(BaseModel):
    id: str
    account_id: str
    to_email: str
    cc: Optional[str] = None
    bcc: Optional[str] = None
    subject: Optional[str] = None
    body_html: Optional[str] = None
    attachments_json: Optional[str] = None
    draft_id: Optional[str] = None
    send_at: int
    status: ScheduledSendStatus
    retry_count: int
    error_message: Optional[str] = None
    created_at: Optional[str] = None


class CreatedResponse(CommandStatus):
    id: str


class ScheduledSendsResponse(CommandStatus):
    scheduled: List[ScheduledSendRecord]


class ReminderPayload(BaseModel):
    id: Optional[str] = None
    email_id: str
    account_id: str
    remind_at: int


class ReminderRecord(BaseModel):
    id: str
    email_id: str
    account_id: str
    remind_at: int
    is_triggered: bool
    created_at: Optional[str] = None


class RemindersResponse(CommandStatus):
    reminders: List[ReminderRecord]


def create_app(
    svc,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`mail_scheduler.core.SchedulerEngine` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="Mail Scheduler", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.service = svc
    router = APIRouter(dependencies=[auth_dependency])

    def service():
        if api.state.service is None:
            raise HTTPException(500, "Service not initialized")
        return api.state.service

    async def run(cmd: str, payload: Dict[str, Any] | None = None, *, not_found: bool = False) -> Dict[str, Any]:
        result = await service().handle_command(cmd, payload or {})
        if not isinstance(result, dict) or result.get("ok") is not True:
            error = result.get("error") if isinstance(result, dict) else "unexpected result"
            raise HTTPException(status_code=404 if not_found else 400, detail=error)
        return result

    @router.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def status_():
        """Return a simple health status payload."""
        service()
        return BasicOkResponse(ok=True)

    @router.post("/commands/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now():
        """Ask the scheduler for an immediate tick."""
        return RunNowResponse.model_validate(await run("run now"))

    @router.post("/account", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def add_account(acc: AccountPayload):
        """Register or update an SMTP account definition."""
        return BasicOkResponse.model_validate(await run("addAccount", acc.model_dump()))

    @router.get("/accounts", response_model=AccountsResponse, response_model_exclude_none=True)
    async def list_accounts():
        return AccountsResponse.model_validate(await run("listAccounts"))

    @router.post("/snooze", response_model=SnoozeResponse, response_model_exclude_none=True)
    async def snooze(payload: SnoozePayload):
        """Hide an email until ``snooze_until``."""
        return SnoozeResponse.model_validate(await run("snoozeEmail", payload.model_dump(exclude_none=True)))

    @router.post("/unsnooze", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def unsnooze(payload: UnsnoozePayload):
        """Bring a snoozed email back right away."""
        return BasicOkResponse.model_validate(await run("unsnoozeEmail", payload.model_dump(), not_found=True))

    @router.get("/snoozed", response_model=SnoozedResponse, response_model_exclude_none=True)
    async def list_snoozed(account_id: Optional[str] = None):
        return SnoozedResponse.model_validate(await run("listSnoozed", {"account_id": account_id}))

    @router.post("/scheduled", response_model=CreatedResponse, response_model_exclude_none=True)
    async def schedule_send(payload: ScheduledSendPayload):
        """Queue a message for delivery at ``send_at``."""
        data = payload.model_dump(exclude_none=True)
        if payload.attachments is not None:
            data["attachments"] = [att.model_dump(by_alias=True) for att in payload.attachments]
        return CreatedResponse.model_validate(await run("scheduleSend", data))

    @router.get("/scheduled", response_model=ScheduledSendsResponse, response_model_exclude_none=True)
    async def list_scheduled(account_id: Optional[str] = None, status: Optional[ScheduledSendStatus] = None):
        payload = {"account_id": account_id, "status": status.value if status else None}
        return ScheduledSendsResponse.model_validate(await run("listScheduledSends", payload))

    @router.patch("/scheduled/{scheduled_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def update_scheduled(scheduled_id: str, payload: ScheduledSendUpdate):
        """Edit a scheduled send that has not been picked up yet."""
        data: Dict[str, Any] = payload.model_dump(exclude_unset=True)
        if "send_at" in data and data["send_at"] is None:
            raise HTTPException(status_code=400, detail="send_at cannot be null")
        if payload.attachments is not None:
            data["attachments"] = [att.model_dump(by_alias=True) for att in payload.attachments]
        data["id"] = scheduled_id
        return BasicOkResponse.model_validate(await run("updateScheduledSend", data, not_found=True))

    @router.delete("/scheduled/{scheduled_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def cancel_scheduled(scheduled_id: str):
        return BasicOkResponse.model_validate(await run("cancelScheduledSend", {"id": scheduled_id}, not_found=True))

    @router.post("/reminders", response_model=CreatedResponse, response_model_exclude_none=True)
    async def add_reminder(payload: ReminderPayload):
        return CreatedResponse.model_validate(await run("addReminder", payload.model_dump(exclude_none=True)))

    @router.get("/reminders", response_model=RemindersResponse, response_model_exclude_none=True)
    async def list_reminders(account_id: Optional[str] = None, include_triggered: bool = False):
        payload = {"account_id": account_id, "include_triggered": include_triggered}
        return RemindersResponse.model_validate(await run("listReminders", payload))

    @router.delete("/reminders/{reminder_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def cancel_reminder(reminder_id: str):
        return BasicOkResponse.model_validate(await run("cancelReminder", {"id": reminder_id}, not_found=True))

    @router.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics collected by the scheduler."""
        return Response(content=service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
