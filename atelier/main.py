"""
Atelier Workflow Service - FastAPI Application

HTTP surface over the workflow services. Each screen action of the
project board maps to one endpoint.

CONSTRAINTS:
- Caller identity comes from the X-User-Id header
- The caller's role is always read from their profile, never from the body
- Authorization is enforced inside the services, not here
- Email failures are reported as warnings, never as request failures
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import SERVICE_NAME, __version__
from .errors import NotFoundError, WorkflowError
from .role_policy import Actor, capabilities_for
from .services import get_services
from .store import STORE_BACKEND

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("atelier_api")


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class TaskCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[date] = None
    assigned_to: Optional[str] = None
    project_id: Optional[str] = None
    estimated_hours: Optional[float] = None
    task_phase: Optional[str] = None


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[date] = None
    assigned_to: Optional[str] = None
    project_id: Optional[str] = None
    estimated_hours: Optional[float] = None
    task_phase: Optional[str] = None


class StatusChangeRequest(BaseModel):
    status: str
    notes: Optional[str] = None


class ClearanceRequestBody(BaseModel):
    notes: Optional[str] = None


class ClearanceResolveRequest(BaseModel):
    decision: str = Field(..., description="approve | reject")
    notes: Optional[str] = None


class ProjectRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    phase: Optional[str] = None
    project_type: Optional[str] = None
    location: Optional[str] = None
    start_date: Optional[date] = None
    estimated_completion_date: Optional[date] = None


class DeadlineScanRequest(BaseModel):
    within_days: Optional[int] = Field(None, ge=0, le=30)


class CustomAlertRequest(BaseModel):
    assignee_id: str
    due_date: date
    message: Optional[str] = None
    task_id: Optional[str] = None
    custom_task_name: Optional[str] = None
    project_id: Optional[str] = None


class MeetingRequest(BaseModel):
    meeting_date: Optional[str] = None
    description: Optional[str] = None
    agenda: Optional[str] = None
    notes: Optional[str] = None
    project_id: Optional[str] = None
    attendees: Optional[List[str]] = None


class InvoiceRequest(BaseModel):
    invoice_number: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    description: Optional[str] = None
    project_id: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: Decimal
    payment_date: Optional[date] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class DocumentRequest(BaseModel):
    name: Optional[str] = None
    file_path: Optional[str] = None
    url: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    file_extension: Optional[str] = None
    description: Optional[str] = None
    project_id: Optional[str] = None


class ImageRequest(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    file_path: Optional[str] = None
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    phase: Optional[str] = None
    description: Optional[str] = None
    is_featured: Optional[bool] = None


def _payload(body: BaseModel) -> Dict[str, Any]:
    """Fields the caller actually sent, with dates as ISO strings."""
    data = body.model_dump(exclude_unset=True)
    return {k: (v.isoformat() if isinstance(v, date) else v) for k, v in data.items()}


def _warning(results) -> Optional[str]:
    failed = [r for r in results if not r.sent]
    if not failed:
        return None
    return f"{len(failed)} of {len(results)} email(s) failed to send; notifications were still recorded"


# -----------------------------------------------------------------------------
# FastAPI Application
# -----------------------------------------------------------------------------
app = FastAPI(
    title=SERVICE_NAME,
    description="Task, clearance and project workflow for an architecture studio",
    version=__version__
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request, exc: WorkflowError):
    """Return workflow errors in the standard error format."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.to_dict()}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions with standard error format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": f"HTTP_{exc.status_code}",
                "message": exc.detail,
                "details": {}
            }
        }
    )


def current_actor(x_user_id: Optional[str] = Header(None)) -> Actor:
    """Resolve the caller from the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    try:
        return get_services().profiles.resolve_actor(x_user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail=f"Unknown user '{x_user_id}'")


# -----------------------------------------------------------------------------
# API Endpoints - Health
# -----------------------------------------------------------------------------
@app.get("/")
def root():
    """Health check endpoint."""
    return {
        "service": SERVICE_NAME,
        "status": "running",
        "version": __version__
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "api": "operational",
            "store_backend": STORE_BACKEND,
        },
        "version": __version__,
    }


# -----------------------------------------------------------------------------
# API Endpoints - Users
# -----------------------------------------------------------------------------
@app.get("/me")
def get_me(actor: Actor = Depends(current_actor)):
    profile = get_services().profiles.get_profile(actor.user_id)
    return {
        "profile": profile.to_dict(),
        "capabilities": sorted(c.value for c in capabilities_for(actor.role)),
    }


@app.get("/users/assignable")
def list_assignable_users(actor: Actor = Depends(current_actor)):
    users = get_services().profiles.list_assignable_users(actor)
    return {"users": [u.to_dict() for u in users]}


# -----------------------------------------------------------------------------
# API Endpoints - Tasks
# -----------------------------------------------------------------------------
@app.post("/tasks", status_code=201)
def create_task(request: TaskCreateRequest, actor: Actor = Depends(current_actor)):
    task = get_services().tasks.create_task(actor, _payload(request))
    return task.to_dict()


@app.get("/tasks")
def list_tasks(
    project_id: Optional[str] = None,
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    actor: Actor = Depends(current_actor),
):
    tasks = get_services().tasks.list_tasks(actor, project_id, status, assigned_to)
    return {"tasks": [t.to_dict() for t in tasks], "count": len(tasks)}


@app.get("/tasks/{task_id}")
def get_task(task_id: str, actor: Actor = Depends(current_actor)):
    return get_services().tasks.view_task(actor, task_id).to_dict()


@app.patch("/tasks/{task_id}")
def update_task(task_id: str, request: TaskUpdateRequest, actor: Actor = Depends(current_actor)):
    return get_services().tasks.update_task(actor, task_id, _payload(request)).to_dict()


@app.post("/tasks/{task_id}/status")
def set_task_status(task_id: str, request: StatusChangeRequest, actor: Actor = Depends(current_actor)):
    return get_services().tasks.set_status(actor, task_id, request.status, request.notes).to_dict()


@app.post("/tasks/{task_id}/complete")
def complete_task(task_id: str, actor: Actor = Depends(current_actor)):
    return get_services().tasks.mark_complete(actor, task_id).to_dict()


@app.delete("/tasks/{task_id}")
def delete_task(task_id: str, actor: Actor = Depends(current_actor)):
    return {"deleted": get_services().tasks.delete_task(actor, task_id), "task_id": task_id}


@app.get("/tasks/{task_id}/history")
def task_history(task_id: str, actor: Actor = Depends(current_actor)):
    services = get_services()
    services.tasks.view_task(actor, task_id)
    return {"history": [h.to_dict() for h in services.tasks.get_status_history(task_id)]}


# -----------------------------------------------------------------------------
# API Endpoints - Clearances
# -----------------------------------------------------------------------------
@app.post("/tasks/{task_id}/clearances", status_code=201)
def request_clearance(task_id: str, request: ClearanceRequestBody, actor: Actor = Depends(current_actor)):
    return get_services().clearances.request_clearance(actor, task_id, request.notes).to_dict()


@app.get("/tasks/{task_id}/clearances")
def task_clearances(task_id: str, actor: Actor = Depends(current_actor)):
    services = get_services()
    services.tasks.view_task(actor, task_id)
    clearances = services.clearances.list_for_task(task_id)
    return {"clearances": [c.to_dict() for c in clearances]}


@app.get("/clearances/pending")
def pending_clearances(actor: Actor = Depends(current_actor)):
    clearances = get_services().clearances.list_pending(actor)
    return {"clearances": [c.to_dict() for c in clearances], "count": len(clearances)}


@app.post("/clearances/{clearance_id}/resolve")
def resolve_clearance(clearance_id: str, request: ClearanceResolveRequest, actor: Actor = Depends(current_actor)):
    clearance = get_services().clearances.resolve_clearance(actor, clearance_id, request.decision, request.notes)
    return clearance.to_dict()


# -----------------------------------------------------------------------------
# API Endpoints - Projects
# -----------------------------------------------------------------------------
@app.post("/projects", status_code=201)
def create_project(request: ProjectRequest, actor: Actor = Depends(current_actor)):
    return get_services().projects.create_project(actor, _payload(request)).to_dict()


@app.get("/projects")
def list_projects(actor: Actor = Depends(current_actor)):
    projects = get_services().projects.list_projects_for(actor)
    return {"projects": [p.to_dict() for p in projects], "count": len(projects)}


@app.get("/projects/{project_id}")
def get_project(project_id: str, actor: Actor = Depends(current_actor)):
    return get_services().projects.view_project(actor, project_id).to_dict()


@app.patch("/projects/{project_id}")
def update_project(project_id: str, request: ProjectRequest, actor: Actor = Depends(current_actor)):
    return get_services().projects.update_project(actor, project_id, _payload(request)).to_dict()


@app.delete("/projects/{project_id}")
def delete_project(project_id: str, actor: Actor = Depends(current_actor)):
    return {"deleted": get_services().projects.delete_project(actor, project_id), "project_id": project_id}


@app.get("/projects/{project_id}/stats")
def project_stats(project_id: str, actor: Actor = Depends(current_actor)):
    """Recompute derived statistics; may ratchet the project status."""
    services = get_services()
    services.projects.view_project(actor, project_id)
    return services.projects.recompute_project_stats(project_id).to_dict()


# -----------------------------------------------------------------------------
# API Endpoints - Alerts & Notifications
# -----------------------------------------------------------------------------
@app.post("/alerts/deadline-reminders")
async def send_deadline_reminders(request: DeadlineScanRequest, actor: Actor = Depends(current_actor)):
    dispatcher = get_services().dispatcher
    if request.within_days is None:
        report = await dispatcher.send_deadline_reminders(actor)
    else:
        report = await dispatcher.send_deadline_reminders(actor, within_days=request.within_days)
    response = report.to_dict()
    response["warning"] = _warning(report.results)
    return response


@app.post("/alerts/custom")
async def send_custom_alert(request: CustomAlertRequest, actor: Actor = Depends(current_actor)):
    result = await get_services().dispatcher.send_custom_alert(
        actor,
        assignee_id=request.assignee_id,
        due_date=request.due_date.isoformat(),
        message=request.message,
        task_id=request.task_id,
        custom_task_name=request.custom_task_name,
        project_id=request.project_id,
    )
    response = result.to_dict()
    response["warning"] = None if result.sent else "Alert created but email failed to send"
    return response


@app.get("/notifications")
def list_notifications(unread_only: bool = False, actor: Actor = Depends(current_actor)):
    notifications = get_services().dispatcher.list_notifications(actor, unread_only)
    return {"notifications": [n.to_dict() for n in notifications], "count": len(notifications)}


@app.post("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, actor: Actor = Depends(current_actor)):
    return get_services().dispatcher.mark_read(actor, notification_id).to_dict()


# -----------------------------------------------------------------------------
# API Endpoints - Meetings
# -----------------------------------------------------------------------------
@app.post("/meetings", status_code=201)
async def create_meeting(request: MeetingRequest, actor: Actor = Depends(current_actor)):
    meeting, report = await get_services().meetings.create_meeting(actor, _payload(request))
    return {
        "meeting": meeting.to_dict(),
        "notified": report.succeeded,
        "warning": _warning(report.results),
    }


@app.get("/meetings")
def list_meetings(project_id: Optional[str] = None, actor: Actor = Depends(current_actor)):
    meetings = get_services().meetings.list_meetings(project_id)
    return {"meetings": [m.to_dict() for m in meetings], "count": len(meetings)}


@app.patch("/meetings/{meeting_id}")
async def update_meeting(meeting_id: str, request: MeetingRequest, actor: Actor = Depends(current_actor)):
    meeting, report = await get_services().meetings.update_meeting(actor, meeting_id, _payload(request))
    return {
        "meeting": meeting.to_dict(),
        "notified": report.succeeded,
        "warning": _warning(report.results),
    }


@app.delete("/meetings/{meeting_id}")
def delete_meeting(meeting_id: str, actor: Actor = Depends(current_actor)):
    return {"deleted": get_services().meetings.delete_meeting(actor, meeting_id), "meeting_id": meeting_id}


# -----------------------------------------------------------------------------
# API Endpoints - Invoices
# -----------------------------------------------------------------------------
@app.post("/invoices", status_code=201)
def create_invoice(request: InvoiceRequest, actor: Actor = Depends(current_actor)):
    return get_services().invoices.create_invoice(actor, _payload(request)).to_dict()


@app.get("/invoices")
def list_invoices(project_id: Optional[str] = None, actor: Actor = Depends(current_actor)):
    invoices = get_services().invoices.list_invoices(actor, project_id)
    return {"invoices": [i.to_dict() for i in invoices], "count": len(invoices)}


@app.get("/invoices/summary")
def invoice_summary(actor: Actor = Depends(current_actor)):
    ledger = get_services().invoices
    return {
        "outstanding": str(ledger.outstanding_total(actor)),
        "received": str(ledger.received_total(actor)),
        "currency": "INR",
    }


@app.patch("/invoices/{invoice_id}")
def update_invoice(invoice_id: str, request: InvoiceRequest, actor: Actor = Depends(current_actor)):
    return get_services().invoices.update_invoice(actor, invoice_id, _payload(request)).to_dict()


@app.delete("/invoices/{invoice_id}")
def delete_invoice(invoice_id: str, actor: Actor = Depends(current_actor)):
    return {"deleted": get_services().invoices.delete_invoice(actor, invoice_id), "invoice_id": invoice_id}


@app.post("/invoices/{invoice_id}/payments")
def record_payment(invoice_id: str, request: PaymentRequest, actor: Actor = Depends(current_actor)):
    invoice = get_services().invoices.record_payment(
        actor,
        invoice_id,
        request.amount,
        payment_date=request.payment_date.isoformat() if request.payment_date else None,
        payment_method=request.payment_method,
        notes=request.notes,
    )
    return invoice.to_dict()


@app.get("/invoices/{invoice_id}/payments")
def list_payments(invoice_id: str, actor: Actor = Depends(current_actor)):
    payments = get_services().invoices.list_payments(actor, invoice_id)
    return {"payments": [p.to_dict() for p in payments]}


# -----------------------------------------------------------------------------
# API Endpoints - Documents & Images
# -----------------------------------------------------------------------------
@app.post("/documents", status_code=201)
def register_document(request: DocumentRequest, actor: Actor = Depends(current_actor)):
    return get_services().media.register_document(actor, _payload(request)).to_dict()


@app.get("/documents")
def list_documents(project_id: Optional[str] = None, actor: Actor = Depends(current_actor)):
    documents = get_services().media.list_documents(actor, project_id)
    return {"documents": [d.to_dict() for d in documents], "count": len(documents)}


@app.patch("/documents/{document_id}")
def update_document(document_id: str, request: DocumentRequest, actor: Actor = Depends(current_actor)):
    return get_services().media.update_document(actor, document_id, _payload(request)).to_dict()


@app.delete("/documents/{document_id}")
def delete_document(document_id: str, actor: Actor = Depends(current_actor)):
    file_path = get_services().media.delete_document(actor, document_id)
    return {"deleted": True, "document_id": document_id, "file_path": file_path}


@app.post("/images", status_code=201)
def register_image(request: ImageRequest, actor: Actor = Depends(current_actor)):
    return get_services().media.register_image(actor, _payload(request)).to_dict()


@app.get("/images")
def list_images(
    project_id: Optional[str] = None,
    task_id: Optional[str] = None,
    featured_only: bool = False,
    actor: Actor = Depends(current_actor),
):
    images = get_services().media.list_images(actor, project_id, task_id, featured_only)
    return {"images": [i.to_dict() for i in images], "count": len(images)}


@app.patch("/images/{image_id}")
def update_image(image_id: str, request: ImageRequest, actor: Actor = Depends(current_actor)):
    return get_services().media.update_image(actor, image_id, _payload(request)).to_dict()


@app.delete("/images/{image_id}")
def delete_image(image_id: str, actor: Actor = Depends(current_actor)):
    file_path = get_services().media.delete_image(actor, image_id)
    return {"deleted": True, "image_id": image_id, "file_path": file_path}


# -----------------------------------------------------------------------------
# Startup
# -----------------------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    logger.info(f"{SERVICE_NAME} v{__version__} starting (store backend: {STORE_BACKEND})")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
