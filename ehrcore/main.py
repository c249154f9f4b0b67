from dataclasses import replace
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config, metrics
from .access import AccessDecisionEngine
from .amendments import AmendmentManager
from .audit import AuditLogger
from .auth import resolve_identity
from .break_glass import BreakGlassReviewer
from .db import get_db_stats, init_db
from .directory import SqliteDirectory
from .errors import EhrCoreError, ResourceNotFound, Unauthorized, ValidationError
from .hashing import CONTENT_FIELDS
from .keys import default_key_provider
from .logging_config import configure_logging, ops_log, set_request_id
from .models import Identity, Role
from .rate_limit import RateLimiter
from .schemas import (
    AccessControlRequest,
    AmendmentRequest,
    BreakGlassRequest,
    BreakGlassReviewRequest,
    CreateNoteRequest,
    DigitalSignatureRequest,
    UpdateNoteRequest,
)
from .security import (
    extract_client_id,
    request_metadata,
    validate_action,
    validate_identifier,
    validate_note_fields,
    validate_string_length,
    MAX_REASON_LENGTH,
)
from .signature import SignatureEngine
from .util import canonicalize, parse_iso, sha256_hex

app = FastAPI(title="ehrcore: clinical note integrity and PHI access control")

bearer = HTTPBearer(auto_error=False)
DIRECTORY = SqliteDirectory()
sign_limiter = RateLimiter(config.SIGN_RPM)
authorize_limiter = RateLimiter(config.AUTHORIZE_RPM)

AUDIT: Optional[AuditLogger] = None
ACCESS: Optional[AccessDecisionEngine] = None
SIGNATURES: Optional[SignatureEngine] = None
AMENDMENTS: Optional[AmendmentManager] = None
BREAK_GLASS: Optional[BreakGlassReviewer] = None


@app.on_event("startup")
def _startup():
    global AUDIT, ACCESS, SIGNATURES, AMENDMENTS, BREAK_GLASS
    configure_logging("DEBUG" if config.is_debug() else config.LOG_LEVEL, json_format=config.LOG_JSON)
    init_db()
    AUDIT = AuditLogger()
    ACCESS = AccessDecisionEngine(DIRECTORY, AUDIT)
    SIGNATURES = SignatureEngine(default_key_provider())
    AMENDMENTS = AmendmentManager()
    BREAK_GLASS = BreakGlassReviewer(AUDIT)


@app.middleware("http")
async def _request_id(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(EhrCoreError)
async def _ehrcore_error(request: Request, exc: EhrCoreError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def current_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)
) -> Identity:
    peer = request.client.host if request.client else None
    meta = request_metadata(request.headers, peer)
    return resolve_identity(credentials.credentials if credentials else None, DIRECTORY, meta)


def _with_body(identity: Identity, body) -> Identity:
    """Bind the hash of the request body to the identity's audit metadata."""
    digest = sha256_hex(canonicalize(body.model_dump(mode="json")))
    return replace(identity, request=replace(identity.request, request_hash=digest))


def _rate_limit(limiter: RateLimiter, identity: Identity, request: Request) -> None:
    client_id = extract_client_id(request.headers, identity.user_id)
    if not limiter.allow(client_id):
        ops_log.rate_limit_exceeded(client_id, request.url.path)
        wait = max(1, int(limiter.retry_after(client_id) + 0.999))
        raise HTTPException(429, "RATE_LIMIT", headers={"Retry-After": str(wait)})


def _encounter_patient(encounter_id: str) -> str:
    patient_id = DIRECTORY.get_encounter_patient_id(encounter_id)
    if not patient_id:
        raise ResourceNotFound("Encounter not found")
    return patient_id


def _require_access(identity: Identity, action: str, resource_id: Optional[str], patient_id: str) -> None:
    decision = ACCESS.authorize(identity, action, "clinical_note", resource_id, patient_id)
    if not decision.allowed:
        raise Unauthorized(decision.reason)


def _require_note_access(identity: Identity, action: str, note_id: str) -> None:
    """Authorize against the patient that owns the note's encounter. Unknown notes are 404."""
    note = AMENDMENTS.get(validate_identifier(note_id, "note_id"))
    _require_access(identity, action, note.id, _encounter_patient(note.encounter_id))


def _require_compliance(identity: Identity) -> None:
    if not identity.has_any_role(Role.COMPLIANCE_OFFICER, Role.ADMIN):
        raise Unauthorized("Compliance officer or admin role required")


@app.get("/health")
def health():
    return {
        "status": "ok",
        "env": config.ENV,
        "metrics": metrics.snapshot(),
        "db": get_db_stats(),
        "config": config.validate_config(),
    }


@app.post("/digital-signature")
def digital_signature(req: DigitalSignatureRequest, request: Request, identity: Identity = Depends(current_identity)):
    if req.action not in ("sign", "verify"):
        raise ValidationError("action", "must be 'sign' or 'verify'")
    identity = _with_body(identity, req)
    note_id = validate_identifier(req.note_id, "note_id")
    if req.action == "sign":
        _rate_limit(sign_limiter, identity, request)
        _require_note_access(identity, "sign", note_id)
        return SIGNATURES.sign(note_id, identity).to_dict()
    _require_note_access(identity, "read", note_id)
    return SIGNATURES.verify(note_id).to_dict()


@app.post("/access-control")
def access_control(req: AccessControlRequest, request: Request, identity: Identity = Depends(current_identity)):
    _rate_limit(authorize_limiter, identity, request)
    action = validate_action(req.action)
    resource = validate_string_length(req.resource, "resource", max_length=64)
    patient_id = validate_identifier(req.patient_id, "patient_id") if req.patient_id else None
    decision = ACCESS.authorize(_with_body(identity, req), action, resource, req.resource_id, patient_id)
    return decision.to_dict()


@app.post("/notes", status_code=201)
def create_note(req: CreateNoteRequest, identity: Identity = Depends(current_identity)):
    identity = _with_body(identity, req)
    encounter_id = validate_identifier(req.encounter_id, "encounter_id")
    _require_access(identity, "create", None, _encounter_patient(encounter_id))
    fields = validate_note_fields(req.model_dump(include=set(CONTENT_FIELDS)))
    note_id = AMENDMENTS.create_note(encounter_id, fields, identity, req.note_type)
    return AMENDMENTS.get(note_id).to_dict()


@app.put("/notes/{note_id}")
def update_note(note_id: str, req: UpdateNoteRequest, identity: Identity = Depends(current_identity)):
    identity = _with_body(identity, req)
    _require_note_access(identity, "update", note_id)
    changes = req.model_dump(exclude_unset=True)
    if changes.get("note_type") is None:
        changes.pop("note_type", None)
    return AMENDMENTS.update_draft(note_id, validate_note_fields(changes), identity).to_dict()


@app.post("/notes/{note_id}/amendments", status_code=201)
def create_amendment(note_id: str, req: AmendmentRequest, identity: Identity = Depends(current_identity)):
    identity = _with_body(identity, req)
    _require_note_access(identity, "amend", note_id)
    validate_string_length(req.amendment_reason, "amendment_reason", min_length=0, max_length=MAX_REASON_LENGTH)
    fields = validate_note_fields(req.model_dump(include=set(CONTENT_FIELDS)))
    amended_id = AMENDMENTS.create_amendment(note_id, fields, req.amendment_reason, identity)
    return AMENDMENTS.get(amended_id).to_dict()


@app.get("/notes/{note_id}/history")
def note_history(note_id: str, identity: Identity = Depends(current_identity)):
    _require_note_access(identity, "read", note_id)
    versions = AMENDMENTS.history(note_id)
    return {
        "versions": [v.to_dict() for v in versions],
        "amendments": [link.to_dict() for v in versions for link in AMENDMENTS.amendments_of(v.id)],
    }


@app.post("/break-glass", status_code=201)
def break_glass(req: BreakGlassRequest, identity: Identity = Depends(current_identity)):
    patient_id = validate_identifier(req.patient_id, "patient_id")
    validate_string_length(req.access_reason, "access_reason", max_length=MAX_REASON_LENGTH)
    validate_string_length(req.justification, "justification", min_length=0, max_length=MAX_REASON_LENGTH)
    entry_id = BREAK_GLASS.record_emergency_access(
        _with_body(identity, req), patient_id, req.access_reason, req.justification
    )
    return BREAK_GLASS.get(entry_id).to_dict()


@app.post("/break-glass/{entry_id}/review")
def review_break_glass(entry_id: str, req: BreakGlassReviewRequest, identity: Identity = Depends(current_identity)):
    validate_string_length(req.review_notes, "review_notes", min_length=0, max_length=MAX_REASON_LENGTH)
    return BREAK_GLASS.review(entry_id, identity, req.review_notes).to_dict()


@app.get("/break-glass/pending")
def pending_break_glass(identity: Identity = Depends(current_identity)):
    _require_compliance(identity)
    return {"entries": [e.to_dict() for e in BREAK_GLASS.pending()]}


@app.get("/access-logs/me")
def my_access_logs(identity: Identity = Depends(current_identity)):
    if not identity.patient_id:
        raise Unauthorized("Caller has no patient record")
    return {"entries": [e.to_dict() for e in AUDIT.for_patient(identity.patient_id)]}


@app.get("/access-logs")
def access_logs(
    start: Optional[str] = None,
    end: Optional[str] = None,
    identity: Identity = Depends(current_identity)
):
    _require_compliance(identity)
    try:
        start_dt = parse_iso(start) if start else None
        end_dt = parse_iso(end) if end else None
    except ValueError as e:
        raise ValidationError("start/end", "must be ISO-8601 timestamps") from e
    return {"entries": [e.to_dict() for e in AUDIT.between(start_dt, end_dt)]}
