import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from machine_stock.db.deps import get_stock_db
from machine_stock.db.session import init_db
from machine_stock.models.stock_models import AuditLog
from machine_stock.schemas.auth import AuthLoginRequest
from machine_stock.schemas.destinations import DestinationCreate
from machine_stock.schemas.machines import (
    AssignDestinationRequest,
    BulkDeleteRequest,
    MachineCreate,
    MachineUpdate,
)
from machine_stock.services import history_service, machine_service
from machine_stock.services.destination_service import (
    create_destination,
    find_or_create_destination,
    get_destination,
    list_destinations,
    seed_default_destinations,
    serialize_destination,
)
from machine_stock.services.errors import StockError
from machine_stock.services.origin_resolver import EPISODES, EPISODE_FIRST
from machine_stock.services.session_service import create_session, get_session, remove_session
from machine_stock.services.status_labels import MachineStatus
from machine_stock.services.user_service import (
    MANAGE_ROLES,
    ROLE_ADMIN,
    serialize_user,
    verify_credentials,
)

app = FastAPI(title="Machine Stock")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=os.environ["SESSION_SIGNING_SECRET"].strip(),
    session_cookie="machine_stock_session",
    same_site="lax",
    https_only=False,
)

RETENTION_YEARS = int(os.environ.get("RETENTION_YEARS") or str(machine_service.DEFAULT_RETENTION_YEARS))
ORIGIN_EPISODE = (os.environ.get("ORIGIN_EPISODE") or EPISODE_FIRST).strip().lower()
if ORIGIN_EPISODE not in EPISODES:
    raise RuntimeError(f"ORIGIN_EPISODE must be one of {', '.join(EPISODES)}")

LOCAL_ADMIN_USERNAME = "admin"
LOCAL_ADMIN_PASSWORD = (os.environ.get("LOCAL_ADMIN_PASSWORD") or "").strip()
LOCAL_ADMIN_USER_ID = 0
AUTH_LOGGER = logging.getLogger("machine_stock.auth")

if _parse_bool_env("DB_AUTO_CREATE", "true"):
    init_db()


@app.exception_handler(StockError)
async def _stock_error_handler(request: Request, exc: StockError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(IntegrityError)
async def _integrity_error_handler(request: Request, exc: IntegrityError):
    return JSONResponse(status_code=409, content={"detail": "Conflicting record."})


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def _audit_event(db: Session, *, entity_type: str, entity_id: int, action: str, details: str, user_id: int | None) -> None:
    try:
        log_audit(db, entity_type, entity_id, action, details, user_id=user_id)
        db.commit()
    except Exception:
        db.rollback()
        AUTH_LOGGER.exception("Audit write failed action=%s entity=%s:%s", action, entity_type, entity_id)


def _extract_token(x_session_token: str | None, authorization: str | None) -> str | None:
    if x_session_token:
        return x_session_token.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = {**session_from_token, "token": session_token}
        return dict(session_from_token)
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict) and get_session(session_from_cookie.get("token")):
        return dict(session_from_cookie)
    return None


def require_session(
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    authorization: str | None = Header(None),
) -> dict:
    session = _get_active_session(request, _extract_token(x_session_token, authorization))
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def require_manager(session: dict = Depends(require_session)) -> dict:
    if str(session.get("role") or "") not in MANAGE_ROLES:
        raise HTTPException(status_code=403, detail="Admin or Manager role required.")
    return session


def require_admin(session: dict = Depends(require_session)) -> dict:
    if str(session.get("role") or "") != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return session


def _issue_session(request: Request, user_payload: dict) -> str:
    token = create_session(user_payload)
    request.session["user"] = {**user_payload, "token": token}
    return token


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_stock_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: AuthLoginRequest, request: Request, db: Session = Depends(get_stock_db)):
    identity = str(payload.email or payload.username or "").strip().lower()
    password = str(payload.password or "")
    if not identity or not password:
        raise HTTPException(status_code=400, detail="Invalid login request.")

    if identity == LOCAL_ADMIN_USERNAME:
        if not LOCAL_ADMIN_PASSWORD or password != LOCAL_ADMIN_PASSWORD:
            AUTH_LOGGER.warning("Login failed identity=%s reason=invalid_admin_password", identity)
            _audit_event(db, entity_type="Auth", entity_id=0, action="LoginFailed", details=f"identity={identity}", user_id=None)
            raise HTTPException(status_code=401, detail="Invalid credentials.")
        user_payload = {"userID": LOCAL_ADMIN_USER_ID, "email": LOCAL_ADMIN_USERNAME, "role": ROLE_ADMIN, "isLocalAdmin": True}
    else:
        user = verify_credentials(db, identity, password)
        if user is None:
            AUTH_LOGGER.warning("Login failed identity=%s reason=invalid_credentials", identity)
            _audit_event(db, entity_type="Auth", entity_id=0, action="LoginFailed", details=f"identity={identity}", user_id=None)
            raise HTTPException(status_code=401, detail="Invalid credentials.")
        user_payload = serialize_user(user)

    token = _issue_session(request, user_payload)
    _audit_event(
        db,
        entity_type="Auth",
        entity_id=int(user_payload["userID"]),
        action="LoginSuccess",
        details=f"identity={identity}",
        user_id=int(user_payload["userID"]),
    )
    AUTH_LOGGER.info("Login success identity=%s role=%s", identity, user_payload["role"])
    return {"sessionToken": token, "user": user_payload}


@app.post("/api/auth/logout")
def auth_logout(
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    authorization: str | None = Header(None),
):
    cookie_user = request.session.get("user")
    if isinstance(cookie_user, dict):
        remove_session(cookie_user.get("token"))
    request.session.clear()
    remove_session(_extract_token(x_session_token, authorization))
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {"user": {key: value for key, value in session.items() if key not in {"token", "expiresAt"}}}


@app.get("/api/machines")
def get_machines(session: dict = Depends(require_session), db: Session = Depends(get_stock_db)):
    return [machine_service.serialize_machine(machine) for machine in machine_service.list_machines(db)]


@app.get("/api/machines/stock")
def get_stock_machines(session: dict = Depends(require_session), db: Session = Depends(get_stock_db)):
    machines = machine_service.list_machines(db, status=MachineStatus.STOCKED)
    return [machine_service.serialize_machine(machine) for machine in machines]


@app.get("/api/machines/repairs")
def get_repair_machines(session: dict = Depends(require_session), db: Session = Depends(get_stock_db)):
    return [
        machine_service.serialize_machine(machine, origin=origin)
        for machine, origin in machine_service.list_repairs(db, ORIGIN_EPISODE)
    ]


@app.get("/api/machines/delivered")
def get_delivered_machines(session: dict = Depends(require_session), db: Session = Depends(get_stock_db)):
    machines = machine_service.list_machines(db, status=MachineStatus.DELIVERED)
    return [machine_service.serialize_machine(machine) for machine in machines]


@app.get("/api/machines/destination/{destination_id}")
def get_destination_machines(destination_id: int, session: dict = Depends(require_session), db: Session = Depends(get_stock_db)):
    machines = machine_service.list_machines(db, destination_id=destination_id)
    return [machine_service.serialize_machine(machine) for machine in machines]


@app.put("/api/machines/check-delivered")
def check_delivered(
    years: int | None = Query(None, ge=0),
    session: dict = Depends(require_manager),
    db: Session = Depends(get_stock_db),
):
    result = machine_service.sweep_retention(db, years=RETENTION_YEARS if years is None else years)
    _audit_event(
        db,
        entity_type="Machine",
        entity_id=0,
        action="RetentionSweep",
        details=f"updated={result['updatedCount']} failed={len(result['failed'])}",
        user_id=session.get("userID"),
    )
    return result


@app.post("/api/machines/bulk-delete")
def bulk_delete_machines(payload: BulkDeleteRequest, session: dict = Depends(require_admin), db: Session = Depends(get_stock_db)):
    result = machine_service.bulk_delete_machines(db, payload.ids)
    for machine_id in result["deletedIDs"]:
        log_audit(db, "Machine", machine_id, "Delete", "bulk", user_id=session.get("userID"))
    db.commit()
    return result


@app.get("/api/machines/{machine_id}")
def get_machine(machine_id: int, session: dict = Depends(require_session), db: Session = Depends(get_stock_db)):
    return machine_service.serialize_machine(machine_service.get_machine(db, machine_id))


@app.post("/api/machines")
def create_machine(payload: MachineCreate, session: dict = Depends(require_manager), db: Session = Depends(get_stock_db)):
    try:
        machine = machine_service.create_machine(
            db,
            machine_type=payload.type,
            reference=payload.reference,
            serial_number=payload.serialNumber,
            inventory_number=payload.inventoryNumber,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return machine_service.serialize_machine(machine)


@app.put("/api/machines/{machine_id}")
def update_machine(
    machine_id: int,
    payload: MachineUpdate,
    session: dict = Depends(require_manager),
    db: Session = Depends(get_stock_db),
):
    try:
        machine = machine_service.update_machine(db, machine_id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return machine_service.serialize_machine(machine)


@app.put("/api/machines/{machine_id}/assign")
def assign_machine(
    machine_id: int,
    payload: AssignDestinationRequest,
    session: dict = Depends(require_manager),
    db: Session = Depends(get_stock_db),
):
    destination_id = payload.destinationId
    if destination_id is None:
        machine_service.get_machine(db, machine_id)
        try:
            destination_id = find_or_create_destination(db, payload.destinationName).DestinationID
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    machine = machine_service.assign_machine(db, machine_id, destination_id)
    return machine_service.serialize_machine(machine)


@app.put("/api/machines/{machine_id}/repair")
def enter_repair(machine_id: int, session: dict = Depends(require_manager), db: Session = Depends(get_stock_db)):
    return machine_service.serialize_machine(machine_service.enter_repair(db, machine_id))


@app.put("/api/machines/{machine_id}/finish-repair")
def finish_repair(machine_id: int, session: dict = Depends(require_manager), db: Session = Depends(get_stock_db)):
    machine = machine_service.finish_repair(db, machine_id, ORIGIN_EPISODE)
    return machine_service.serialize_machine(machine)


@app.put("/api/machines/{machine_id}/deliver")
def deliver_machine(machine_id: int, session: dict = Depends(require_manager), db: Session = Depends(get_stock_db)):
    return machine_service.serialize_machine(machine_service.deliver_machine(db, machine_id))


@app.delete("/api/machines/{machine_id}")
def delete_machine(machine_id: int, session: dict = Depends(require_admin), db: Session = Depends(get_stock_db)):
    removed = machine_service.delete_machine(db, machine_id)
    log_audit(db, "Machine", machine_id, "Delete", f"history_removed={removed}", user_id=session.get("userID"))
    db.commit()
    return {"message": "Deleted", "historyRemoved": removed}


@app.get("/api/history")
def get_history(
    machine_id: int | None = Query(None, alias="machineId"),
    order: str | None = Query(None, pattern="^(asc|desc)$"),
    session: dict = Depends(require_session),
    db: Session = Depends(get_stock_db),
):
    if machine_id is not None:
        machine_service.get_machine(db, machine_id)
    # Per-machine history reads oldest first; the global feed newest first.
    newest_first = order == "desc" if order else machine_id is None
    entries = history_service.list_history(db, machine_id, newest_first=newest_first)
    return [history_service.serialize_history(entry, include_machine=machine_id is None) for entry in entries]


@app.delete("/api/history/{history_id}")
def delete_history_entry(history_id: int, session: dict = Depends(require_admin), db: Session = Depends(get_stock_db)):
    history_service.delete_entry(db, history_id)
    log_audit(db, "History", history_id, "Delete", None, user_id=session.get("userID"))
    db.commit()
    return {"message": "Deleted"}


@app.get("/api/destinations")
def get_destinations(session: dict = Depends(require_session), db: Session = Depends(get_stock_db)):
    return [serialize_destination(destination, include_machines=True) for destination in list_destinations(db)]


@app.post("/api/destinations")
def post_destination(payload: DestinationCreate, session: dict = Depends(require_manager), db: Session = Depends(get_stock_db)):
    try:
        destination = create_destination(db, payload.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_destination(destination)


@app.get("/api/destinations/{destination_id}")
def get_destination_item(destination_id: int, session: dict = Depends(require_session), db: Session = Depends(get_stock_db)):
    return serialize_destination(get_destination(db, destination_id), include_machines=True)


@app.post("/api/init/destinations")
def init_destinations(session: dict = Depends(require_admin), db: Session = Depends(get_stock_db)):
    return seed_default_destinations(db)
