from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from apex import pages, services
from apex.config import get_settings
from apex.db import create_db_engine, make_session_factory
from apex.schemas import AssessmentRecord, Deal, SessionUser
from apex.services import FormError, Services

log = logging.getLogger(__name__)


class AuthenticationRequired(Exception):
    """The request needs a signed-in user."""


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    engine = create_db_engine(settings.database_path)
    app.state.services = services.build_services(make_session_factory(engine), settings=settings)
    try:
        yield
    finally:
        engine.dispose()


app = FastAPI(
    title="Apex",
    version="0.1.0",
    description=(
        "Deal tracking with AI-assisted MEDDPICC qualification. "
        "Assessments use the configured LLM provider and fall back to "
        "deterministic heuristic scoring."
    ),
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(request: Request, svc: Services = Depends(get_services)) -> SessionUser | None:
    return svc.sessions.get(request.cookies.get(get_settings().cookie_name))


def require_user(user: SessionUser | None = Depends(current_user)) -> SessionUser:
    if user is None:
        raise AuthenticationRequired()
    return user


ServicesDep = Annotated[Services, Depends(get_services)]
UserDep = Annotated[SessionUser, Depends(require_user)]


def _redirect(location: str) -> RedirectResponse:
    return RedirectResponse(location, status_code=302)


def _deal_or_404(svc: Services, user: SessionUser, deal_id: str, detail: str = "Not found") -> Deal:
    deal = svc.store.get_deal(user.sub, deal_id)
    if deal is None:
        raise HTTPException(404, detail)
    return deal


@app.exception_handler(AuthenticationRequired)
async def _auth_required(request: Request, exc: AuthenticationRequired):
    return _redirect("/")


@app.exception_handler(FormError)
async def _form_error(request: Request, exc: FormError):
    return PlainTextResponse(str(exc), status_code=400)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else "Error"
    if exc.status_code == 404 and detail == "Not Found":
        detail = "Not found"
    return PlainTextResponse(detail, status_code=exc.status_code, headers=exc.headers)


# ---------------------------------------------------------------------------
# Routes: Session
# ---------------------------------------------------------------------------


@app.get("/", response_class=HTMLResponse)
async def root(user: SessionUser | None = Depends(current_user)):
    if user is not None:
        return _redirect("/deals")
    return HTMLResponse(pages.login_page())


@app.post("/dev-login")
async def dev_login(svc: ServicesDep, email: str = Form("")):
    sid = svc.sessions.create(email)
    settings = get_settings()
    response = _redirect("/deals")
    response.set_cookie(
        settings.cookie_name, sid, max_age=settings.session_ttl_seconds,
        path="/", httponly=True, secure=True, samesite="lax",
    )
    return response


@app.api_route("/logout", methods=["GET", "POST"])
async def logout(request: Request, svc: ServicesDep):
    cookie_name = get_settings().cookie_name
    sid = request.cookies.get(cookie_name)
    if sid:
        svc.sessions.delete(sid)
    response = _redirect("/")
    response.delete_cookie(cookie_name, path="/", httponly=True, secure=True, samesite="lax")
    return response


# ---------------------------------------------------------------------------
# Routes: Deals
# ---------------------------------------------------------------------------


@app.get("/deals", response_class=HTMLResponse)
async def list_deals(user: UserDep, svc: ServicesDep):
    deals = svc.store.list_deals(user.sub)
    return HTMLResponse(pages.deals_page(deals, user.email))


@app.post("/deal")
async def create_deal(request: Request, user: UserDep, svc: ServicesDep):
    fields = services.parse_deal_form(await request.form())
    deal = svc.store.create_deal(user.sub, **fields)
    return _redirect(f"/deal/{deal.deal_id}")


@app.get("/deal/{deal_id}", response_class=HTMLResponse)
async def get_deal(deal_id: str, user: UserDep, svc: ServicesDep):
    deal = _deal_or_404(svc, user, deal_id)
    history = svc.store.list_assessments(user.sub, deal_id)
    return HTMLResponse(pages.deal_page(deal, history))


# ---------------------------------------------------------------------------
# Routes: Assessments
# ---------------------------------------------------------------------------


@app.post("/assess")
async def assess(request: Request, user: UserDep, svc: ServicesDep):
    form = await request.form()
    deal_id = str(form.get("dealId") or "").strip()
    deal = _deal_or_404(svc, user, deal_id, "Deal missing")
    scores = services.parse_score_form(form)
    notes = str(form.get("notes") or "")
    record: AssessmentRecord = await services.run_assessment(svc, user.sub, deal, scores, notes)
    return _redirect(f"/assessment/{deal_id}/{record.created_at}")


@app.get("/assessment/{deal_id}/{ts}")
async def get_assessment(deal_id: str, ts: str, user: UserDep, svc: ServicesDep):
    record = svc.store.get_assessment(user.sub, deal_id, ts)
    if record is None:
        raise HTTPException(404, "Not found")
    body = json.dumps(record.model_dump(mode="json", by_alias=True), indent=2)
    return Response(body, media_type="application/json")


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    uvicorn.run("apex.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
