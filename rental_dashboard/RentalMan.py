import logging
import os
import threading
import time
from datetime import date

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from db.deps import get_rental_db
from models.rental_models import Profile
from schemas.auth import LoginRequest, ProfileCreate, ProfileUpdate
from schemas.inventory import ItemUpsert
from schemas.rentals import (
    CartDatesRequest,
    CartLineRequest,
    CustomPriceRequest,
    OpenWorkspaceRequest,
    RentalIdsRequest,
    ReturnCommitRequest,
    SubmitTransactionDto,
)
from schemas.reports import CreateReportDto, ReportIdsRequest
from services.availability_service import check
from services.calendar_service import calendar_events, item_availability_events
from services.cart_service import EntryWorkspace, WorkspaceRegistry, serialize_cart
from services.catalog_service import (
    create_item,
    get_item,
    load_all,
    load_archived,
    parse_kind,
    serialize_item,
    set_archived,
    update_item,
)
from services.dashboard_service import dashboard_stats
from services.errors import AvailabilityError, ConstraintError, RentalError, StoreError, ValidationError
from services.grouping_service import serialize_order
from services.history_service import list_history
from services.profile_service import (
    authenticate,
    can_delete,
    create_profile,
    create_session,
    delete_profile,
    get_current_user_profile,
    get_session,
    list_profiles,
    remove_session,
    serialize_profile,
    update_profile,
)
from services.rental_service import archive_rows, delete_rows, get_rental_detail, list_orders
from services.report_service import (
    analytics,
    create_report,
    delete_reports,
    group_reports,
    list_reports,
    serialize_report,
)
from services.return_service import begin_return, commit_return
from services.transaction_service import TransactionHeader, edit_header, open_workspace, submit


app = FastAPI()
app.state.workspaces = WorkspaceRegistry()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5500,http://localhost:5500",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

AUTH_ATTEMPT_WINDOW_SECONDS = int(os.environ.get("AUTH_ATTEMPT_WINDOW_SECONDS") or "300")
AUTH_MAX_ATTEMPTS_PER_ACCOUNT = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_ACCOUNT") or "8")
AUTH_LOCKOUT_SECONDS = int(os.environ.get("AUTH_LOCKOUT_SECONDS") or "900")
AUTH_LOGGER = logging.getLogger("rental_dashboard.auth")
_AUTH_GUARD_LOCK = threading.Lock()
_AUTH_ATTEMPTS_BY_ACCOUNT: dict[str, list[float]] = {}
_AUTH_LOCKOUT_UNTIL_BY_ACCOUNT: dict[str, float] = {}


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def _check_login_guard(account_key: str) -> int | None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        lockout_until = _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.get(account_key)
        if lockout_until and lockout_until > now_ts:
            return max(1, int(lockout_until - now_ts))
        if lockout_until and lockout_until <= now_ts:
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
    return None


def _record_login_failure(account_key: str) -> None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        attempts.append(now_ts)
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = attempts
        if len(attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)


def _record_login_success(account_key: str) -> None:
    with _AUTH_GUARD_LOCK:
        _AUTH_ATTEMPTS_BY_ACCOUNT.pop(account_key, None)
        _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)


def _http_error(exc: RentalError) -> HTTPException:
    if isinstance(exc, AvailabilityError):
        return HTTPException(
            status_code=409,
            detail={
                "message": str(exc),
                "itemName": exc.item_name,
                "requested": exc.requested,
                "available": exc.available,
                "shortfall": exc.shortfall,
                "shortfalls": exc.shortfalls,
            },
        )
    if isinstance(exc, ConstraintError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _require_session_or_401(session_token: str | None) -> dict:
    session = get_session(session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_profile_or_401(db: Session, session_token: str | None) -> Profile:
    _require_session_or_401(session_token)
    profile = get_current_user_profile(db, session_token)
    if profile is None:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return profile


def _require_admin_or_403(db: Session, session_token: str | None) -> Profile:
    profile = _require_profile_or_401(db, session_token)
    if not can_delete(profile):
        raise HTTPException(status_code=403, detail="Permission denied. Only Admins can do this.")
    return profile


def _actor(profile: Profile) -> dict:
    return {"id": profile.id, "fullname": profile.fullname}


def _kind_or_400(kind: str):
    try:
        return parse_kind(kind)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _workspace_or_404(session_token: str | None) -> EntryWorkspace:
    workspace = app.state.workspaces.get(session_token)
    if workspace is None:
        raise HTTPException(status_code=404, detail="No open rental form. Open one first.")
    return workspace


def _workspace_payload(db: Session, workspace: EntryWorkspace) -> dict:
    return {
        "editRentalIDs": list(workspace.edit_rental_ids),
        "isEdit": workspace.is_edit,
        "isBatchEdit": workspace.is_batch_edit,
        "rentDate": workspace.start_date.isoformat() if workspace.start_date else None,
        "returnDate": workspace.end_date.isoformat() if workspace.end_date else None,
        "editHeader": edit_header(db, workspace),
        "cart": serialize_cart(workspace.cart),
    }


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: LoginRequest, request: Request, db: Session = Depends(get_rental_db)):
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Please enter both email and password.")
    account_key = f"user:{email}"
    retry_after = _check_login_guard(account_key)
    if retry_after is not None:
        AUTH_LOGGER.warning("Login throttled key=%s retry_after=%s", account_key, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
    profile = authenticate(db, email, payload.password)
    if profile is None:
        _record_login_failure(account_key)
        client_host = request.client.host if request.client else "unknown"
        AUTH_LOGGER.warning("Login failed ip=%s key=%s", client_host, account_key)
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    _record_login_success(account_key)
    token = create_session(profile)
    AUTH_LOGGER.info("Login success key=%s user_id=%s", account_key, profile.id)
    return {"sessionToken": token, "user": serialize_profile(profile)}


@app.post("/api/auth/logout")
def auth_logout(x_session_token: str | None = Header(None, alias="X-Session-Token")):
    app.state.workspaces.close(x_session_token)
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    profile = _require_profile_or_401(db, x_session_token)
    return {"user": serialize_profile(profile)}


@app.get("/api/profiles")
def get_profiles(
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_admin_or_403(db, x_session_token)
    return [serialize_profile(profile) for profile in list_profiles(db)]


@app.post("/api/profiles")
def post_profile(
    payload: ProfileCreate,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_admin_or_403(db, x_session_token)
    try:
        profile = create_profile(db, payload.email, payload.fullname, payload.password, payload.role)
    except RentalError as exc:
        raise _http_error(exc) from exc
    return serialize_profile(profile)


@app.put("/api/profiles/{profile_id}")
def put_profile(
    profile_id: str,
    payload: ProfileUpdate,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_admin_or_403(db, x_session_token)
    try:
        profile = update_profile(
            db,
            profile_id,
            fullname=payload.fullname,
            role=payload.role,
            password=payload.password,
        )
    except RentalError as exc:
        raise _http_error(exc) from exc
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return serialize_profile(profile)


@app.delete("/api/profiles/{profile_id}")
def remove_profile(
    profile_id: str,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    admin = _require_admin_or_403(db, x_session_token)
    if admin.id == profile_id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account.")
    try:
        deleted = delete_profile(db, profile_id)
    except RentalError as exc:
        raise _http_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="User not found.")
    return {"ok": True}


@app.get("/api/items")
def get_items(db: Session = Depends(get_rental_db)):
    snapshot = load_all(db)
    return {"items": [serialize_item(item) for item in snapshot.items], "errors": snapshot.errors}


@app.get("/api/items/archived")
def get_archived_items(kind: str = Query("rental"), db: Session = Depends(get_rental_db)):
    return [serialize_item(item) for item in load_archived(db, _kind_or_400(kind))]


@app.get("/api/items/{kind}/{item_id}")
def get_item_detail(kind: str, item_id: str, db: Session = Depends(get_rental_db)):
    try:
        item = get_item(db, _kind_or_400(kind), item_id)
    except RentalError as exc:
        raise _http_error(exc) from exc
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found.")
    return serialize_item(item)


@app.post("/api/items/{kind}")
def post_item(
    kind: str,
    payload: ItemUpsert,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    profile = _require_profile_or_401(db, x_session_token)
    try:
        item = create_item(db, _kind_or_400(kind), payload.to_fields(), _actor(profile))
    except RentalError as exc:
        raise _http_error(exc) from exc
    return serialize_item(item)


@app.put("/api/items/{kind}/{item_id}")
def put_item(
    kind: str,
    item_id: str,
    payload: ItemUpsert,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    profile = _require_profile_or_401(db, x_session_token)
    try:
        item = update_item(db, _kind_or_400(kind), item_id, payload.to_fields(), _actor(profile))
    except RentalError as exc:
        raise _http_error(exc) from exc
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found.")
    return serialize_item(item)


@app.post("/api/items/{kind}/{item_id}/archive")
def archive_item(
    kind: str,
    item_id: str,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    profile = _require_admin_or_403(db, x_session_token)
    try:
        item = set_archived(db, _kind_or_400(kind), item_id, True, _actor(profile))
    except RentalError as exc:
        raise _http_error(exc) from exc
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found.")
    return serialize_item(item)


@app.post("/api/items/{kind}/{item_id}/restore")
def restore_item(
    kind: str,
    item_id: str,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    profile = _require_admin_or_403(db, x_session_token)
    try:
        item = set_archived(db, _kind_or_400(kind), item_id, False, _actor(profile))
    except RentalError as exc:
        raise _http_error(exc) from exc
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found.")
    return serialize_item(item)


@app.get("/api/items/{kind}/{item_id}/availability")
def get_item_availability(
    kind: str,
    item_id: str,
    start_date: date = Query(..., alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    quantity: int = Query(1, ge=1),
    exclude_rental_id: int | None = Query(None, alias="excludeRentalID"),
    db: Session = Depends(get_rental_db),
):
    try:
        result = check(db, _kind_or_400(kind), item_id, start_date, end_date, quantity, exclude_rental_id)
    except RentalError as exc:
        raise _http_error(exc) from exc
    if result.reason == "Item not found":
        raise HTTPException(status_code=404, detail="Item not found.")
    return result.to_payload()


@app.get("/api/items/{kind}/{item_id}/calendar")
def get_item_calendar(
    kind: str,
    item_id: str,
    days: int = Query(90, ge=1, le=366),
    db: Session = Depends(get_rental_db),
):
    try:
        events = item_availability_events(db, _kind_or_400(kind), item_id, days=days)
    except RentalError as exc:
        raise _http_error(exc) from exc
    if events is None:
        raise HTTPException(status_code=404, detail="Item not found.")
    return events


@app.get("/api/history")
def get_history(
    action: str | None = Query(None),
    user_name: str | None = Query(None, alias="userName"),
    db: Session = Depends(get_rental_db),
):
    return list_history(db, action=action, user_name=user_name)


@app.post("/api/cart")
def open_cart(
    payload: OpenWorkspaceRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_profile_or_401(db, x_session_token)
    try:
        workspace = open_workspace(db, app.state.workspaces, x_session_token, payload.editRentalIDs)
    except RentalError as exc:
        raise _http_error(exc) from exc
    return _workspace_payload(db, workspace)


@app.get("/api/cart")
def get_cart(
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_session_or_401(x_session_token)
    return _workspace_payload(db, _workspace_or_404(x_session_token))


@app.post("/api/cart/lines")
def add_cart_line(
    payload: CartLineRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_session_or_401(x_session_token)
    workspace = _workspace_or_404(x_session_token)
    try:
        kind = _kind_or_400(payload.itemKind)
        item = get_item(db, kind, payload.itemID)
    except RentalError as exc:
        raise _http_error(exc) from exc
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    days = payload.days if payload.days is not None else workspace.rental_days()
    message = workspace.cart.add_line(item, payload.quantity, days)
    if message:
        raise HTTPException(status_code=400, detail=message)

    response = _workspace_payload(db, workspace)
    if workspace.start_date is not None:
        line = workspace.cart.find_line(kind, item.id)
        exclude = line.existing_rental_id if line is not None else None
        result = check(db, kind, item.id, workspace.start_date, workspace.end_date, line.quantity, exclude)
        response["availability"] = result.to_payload()
    return response


@app.delete("/api/cart/lines/{index}")
def remove_cart_line(
    index: int,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_session_or_401(x_session_token)
    workspace = _workspace_or_404(x_session_token)
    try:
        workspace.cart.remove_line(index)
    except RentalError as exc:
        raise _http_error(exc) from exc
    return _workspace_payload(db, workspace)


@app.put("/api/cart/dates")
def change_cart_dates(
    payload: CartDatesRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_session_or_401(x_session_token)
    workspace = _workspace_or_404(x_session_token)
    warning = workspace.cart.recalculate_for_date_change(payload.rentDate, payload.returnDate)
    if warning:
        raise HTTPException(status_code=400, detail=warning)
    workspace.start_date = payload.rentDate
    workspace.end_date = payload.returnDate
    return _workspace_payload(db, workspace)


@app.put("/api/cart/custom-price")
def change_cart_custom_price(
    payload: CustomPriceRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_session_or_401(x_session_token)
    workspace = _workspace_or_404(x_session_token)
    try:
        workspace.cart.set_custom_price(payload.enabled, payload.amount)
    except RentalError as exc:
        raise _http_error(exc) from exc
    return _workspace_payload(db, workspace)


@app.post("/api/cart/submit")
def submit_cart(
    payload: SubmitTransactionDto,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_profile_or_401(db, x_session_token)
    workspace = _workspace_or_404(x_session_token)
    header = TransactionHeader(
        renter_name=payload.renterName,
        rent_date=payload.rentDate,
        return_date=payload.returnDate,
        status=payload.status,
        payment_status=payload.paymentStatus,
        payment_method=payload.paymentMethod,
        client_phone=payload.clientPhone,
        client_address=payload.clientAddress,
        rent_time=payload.rentTime,
        return_time=payload.returnTime,
        advance_payment=payload.advancePayment,
    )
    try:
        outcome = submit(db, workspace, header)
    except RentalError as exc:
        raise _http_error(exc) from exc
    if outcome.return_session is None or not outcome.return_session.requires_choice:
        app.state.workspaces.close(x_session_token)
    return outcome.to_payload()


@app.delete("/api/cart")
def close_cart(x_session_token: str | None = Header(None, alias="X-Session-Token")):
    _require_session_or_401(x_session_token)
    app.state.workspaces.close(x_session_token)
    return {"ok": True}


@app.get("/api/rentals")
def get_rentals(archived: bool = Query(False), db: Session = Depends(get_rental_db)):
    return [serialize_order(order) for order in list_orders(db, archived=archived)]


@app.get("/api/rentals/{rental_id}")
def get_rental(rental_id: int, db: Session = Depends(get_rental_db)):
    detail = get_rental_detail(db, rental_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Rental not found.")
    return detail


@app.post("/api/rentals/archive")
def archive_rentals(
    payload: RentalIdsRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_profile_or_401(db, x_session_token)
    return archive_rows(db, payload.rentalIDs)


@app.post("/api/rentals/delete")
def delete_rentals(
    payload: RentalIdsRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_admin_or_403(db, x_session_token)
    return delete_rows(db, payload.rentalIDs)


@app.post("/api/returns/begin")
def begin_rental_return(
    payload: RentalIdsRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_profile_or_401(db, x_session_token)
    try:
        session = begin_return(db, payload.rentalIDs)
    except RentalError as exc:
        raise _http_error(exc) from exc
    return session.to_payload()


@app.post("/api/returns/commit")
def commit_rental_return(
    payload: ReturnCommitRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    profile = _require_profile_or_401(db, x_session_token)
    try:
        session = begin_return(db, payload.rentalIDs)
        if session.requires_choice:
            commit_return(
                db,
                session,
                payload.outcome,
                missing_by_rental_id=payload.missing,
                notes=payload.notes,
                damage_description=payload.damageDescription,
                severity_by_rental_id=payload.severities,
                actor=_actor(profile),
            )
    except RentalError as exc:
        raise _http_error(exc) from exc
    app.state.workspaces.close(x_session_token)
    return session.to_payload()


@app.get("/api/reports")
def get_reports(report_type: str | None = Query(None, alias="type"), db: Session = Depends(get_rental_db)):
    return [serialize_report(report) for report in list_reports(db, report_type)]


@app.get("/api/reports/grouped")
def get_grouped_reports(db: Session = Depends(get_rental_db)):
    return group_reports(list_reports(db))


@app.get("/api/reports/analytics")
def get_report_analytics(db: Session = Depends(get_rental_db)):
    return analytics(db)


@app.post("/api/reports")
def post_report(
    payload: CreateReportDto,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_profile_or_401(db, x_session_token)
    try:
        report = create_report(
            db,
            {
                "rental_id": payload.rentalID,
                "item_name": payload.itemName,
                "quantity": payload.quantity,
                "type": payload.type,
                "notes": payload.notes,
            },
        )
    except RentalError as exc:
        raise _http_error(exc) from exc
    return serialize_report(report)


@app.post("/api/reports/delete")
def delete_report_rows(
    payload: ReportIdsRequest,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    db: Session = Depends(get_rental_db),
):
    _require_admin_or_403(db, x_session_token)
    try:
        deleted = delete_reports(db, payload.reportIDs)
    except RentalError as exc:
        raise _http_error(exc) from exc
    return {"deleted": deleted, "requested": len(payload.reportIDs)}


@app.get("/api/calendar/events")
def get_calendar_events(db: Session = Depends(get_rental_db)):
    return calendar_events(db)


@app.get("/api/dashboard")
def get_dashboard(db: Session = Depends(get_rental_db)):
    return dashboard_stats(db)
