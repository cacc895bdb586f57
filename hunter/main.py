import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import hashlib
import json
import os
import time
import traceback
import uuid

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import logging
from fastapi import FastAPI, Depends, Query, Header, HTTPException, Response, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import text, bindparam
from sqlalchemy.types import Integer, String as SAString
from sqlalchemy.ext.asyncio import AsyncSession

from hunter.core.config import settings
from hunter.core.db import SessionLocal, get_session, init_db, engine
from hunter.core.http import init_http_clients, close_http_clients
from hunter.core.timeutils import utcnow
from hunter.data.providers import supabase_auth
from hunter.jobs import maintenance, repair_cascades
from hunter.services import cycles, ingest, settling
from hunter.services.credits import adjust_credits, get_balance
from hunter.services.errors import HunterError, NotFoundError, ValidationError

scheduler = AsyncIOScheduler()
logger = logging.getLogger(__name__)
APP_STARTED_AT = utcnow()
JOB_LOCKS: dict[str, asyncio.Lock] = {}
JOB_STATUS: dict[str, dict] = {}
RUN_NOW_LAST: dict[str, float] = {}
JOBS = {
    "repair_cascades": repair_cascades.run,
    "maintenance": maintenance.run,
}


def _advisory_key(name: str) -> int:
    digest = hashlib.blake2b(f"hunter:{name}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


async def _try_advisory_lock(conn, key: int) -> bool:
    try:
        row = (await conn.execute(text("SELECT pg_try_advisory_lock(:k) AS ok"), {"k": int(key)})).first()
        return bool(row.ok) if row else False
    except Exception as e:
        logger.warning(f"Failed to acquire advisory lock {key}: {e}")
        return False


async def _advisory_unlock(conn, key: int) -> None:
    try:
        await conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": int(key)})
    except Exception as e:
        logger.warning(f"Failed to release advisory lock {key}: {e}")


def _require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")):
    token = (settings.admin_token or "").strip()
    if not token:
        raise HTTPException(status_code=403, detail="Admin token is not configured")
    if x_admin_token != token:
        raise HTTPException(status_code=403, detail="Forbidden")


def _admin_actor(x_admin_actor: str | None = Header(default=None, alias="X-Admin-Actor")) -> Optional[str]:
    return (x_admin_actor or "").strip() or None


def _actor_uuid(actor: Optional[str]) -> Optional[str]:
    """settled_by/created_by columns reference auth users; non-UUID actors are recorded as NULL."""
    if not actor:
        return None
    try:
        return str(uuid.UUID(actor))
    except ValueError:
        return None


async def _current_user(authorization: str | None = Header(default=None)) -> supabase_auth.AuthUser:
    if not settings.auth_configured:
        raise HTTPException(status_code=503, detail="Auth provider is not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token", headers={"WWW-Authenticate": "Bearer"})
    try:
        return await supabase_auth.get_user(token)
    except supabase_auth.AuthError as e:
        raise HTTPException(status_code=401, detail=str(e), headers={"WWW-Authenticate": "Bearer"})


def _validate_runtime_config(*, for_scheduler: bool) -> None:
    if settings.is_prod:
        if not (settings.admin_token or "").strip():
            raise RuntimeError("ADMIN_TOKEN is required in prod")
        if not settings.auth_configured and not for_scheduler:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required in prod")
    elif not settings.auth_configured:
        logger.warning("SUPABASE_URL/SUPABASE_ANON_KEY are not configured; user routes will return 503")
    if settings.telegram_admin_chat is None:
        logger.info("TELEGRAM_ADMIN_CHAT_ID is not configured; cascade failures are only logged")


def _get_lock(name: str) -> asyncio.Lock:
    lock = JOB_LOCKS.get(name)
    if lock is None:
        lock = asyncio.Lock()
        JOB_LOCKS[name] = lock
    return lock


def _set_status(store: dict, key: str, **values):
    cur = store.get(key) or {}
    cur.update(values)
    store[key] = cur


def _serialize_status(store: dict) -> dict:
    out: dict = {}
    for k, v in store.items():
        row = dict(v)
        for ts_key in ("started_at", "finished_at"):
            ts = row.get(ts_key)
            if isinstance(ts, datetime):
                row[ts_key] = ts.isoformat()
        out[k] = row
    return out


def _create_task(coro, *, label: str):
    task = asyncio.create_task(coro)

    def _done(t: asyncio.Task):
        try:
            t.result()
        except Exception:
            logger.exception("background_task_failed label=%s", label)

    task.add_done_callback(_done)
    return task


async def _scheduled_repair_cascades():
    await _run_job("repair_cascades", repair_cascades.run, triggered_by="scheduler")


async def _scheduled_maintenance():
    await _run_job("maintenance", maintenance.run, triggered_by="scheduler")


def add_scheduled_jobs(sched: AsyncIOScheduler) -> None:
    sched.add_job(
        _scheduled_repair_cascades,
        CronTrigger.from_crontab(settings.job_repair_cascades_cron),
        id="repair_cascades",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )
    sched.add_job(
        _scheduled_maintenance,
        CronTrigger.from_crontab(settings.job_maintenance_cron),
        id="maintenance",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db()
    await init_http_clients()
    _validate_runtime_config(for_scheduler=False)

    if settings.scheduler_enabled:
        workers_raw = os.getenv("UVICORN_WORKERS") or os.getenv("WEB_CONCURRENCY") or "1"
        try:
            workers = int(workers_raw)
        except ValueError:
            workers = 1
        if workers > 1:
            logger.error("scheduler_refuse_multiworker workers=%s", workers)
            raise RuntimeError("scheduler is not allowed with UVICORN_WORKERS/WEB_CONCURRENCY > 1; run a separate scheduler service")
        if settings.is_prod and not settings.allow_web_scheduler:
            logger.error("scheduler_refuse_in_web_process env=%s", settings.app_env)
            raise RuntimeError("scheduler in web process is disabled in prod; set ALLOW_WEB_SCHEDULER=true or run a separate scheduler service")

        add_scheduled_jobs(scheduler)
        scheduler.start()
    try:
        yield
    finally:
        if settings.scheduler_enabled:
            scheduler.shutdown(wait=False)
        try:
            await close_http_clients()
        except Exception:
            logger.exception("http_client_close_failed")
        try:
            await engine.dispose()
        except Exception:
            logger.exception("engine_dispose_failed")


app = FastAPI(title="Hunter Protocol", lifespan=lifespan)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(HunterError)
async def hunter_error_handler(_: Request, exc: HunterError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def _db_job_run_start(job_name: str, triggered_by: str | None, meta: Optional[dict], session: AsyncSession) -> int | None:
    try:
        meta_obj = {"job": job_name, "app_env": settings.app_env}
        if meta:
            meta_obj.update(meta)
        res = await session.execute(
            text(
                """
                INSERT INTO job_runs(job_name, status, triggered_by, started_at, meta)
                VALUES(:job, 'running', :by, now(), CAST(:meta AS jsonb))
                RETURNING id
                """
            ),
            {"job": job_name, "by": triggered_by, "meta": json.dumps(meta_obj)},
        )
        rid = res.scalar_one()
        await session.commit()
        return int(rid)
    except Exception:
        logger.exception("job_runs_start_failed job=%s", job_name)
        await session.rollback()
        return None


async def _db_job_run_finish(
    run_id: int | None,
    status: str,
    error: str | None,
    meta: Optional[dict],
    session: AsyncSession,
):
    if run_id is None:
        return
    try:
        await session.execute(
            text(
                """
                UPDATE job_runs
                SET status=:status, finished_at=now(), error=:error,
                    meta = COALESCE(meta, '{}'::jsonb) || CAST(:meta AS jsonb)
                WHERE id=:id
                """
            ),
            {"id": run_id, "status": status, "error": error, "meta": json.dumps(meta or {})},
        )
        await session.commit()
    except Exception:
        logger.exception("job_runs_finish_failed id=%s status=%s", run_id, status)


async def _run_job(job_name: str, job_fn, triggered_by: str | None = None, meta: Optional[dict] = None):
    lock = _get_lock(job_name)
    if lock.locked():
        logger.warning("job_skip_already_running job=%s", job_name)
        return
    async with lock:
        key = _advisory_key(job_name)
        async with engine.connect() as lock_conn:
            if not await _try_advisory_lock(lock_conn, key):
                logger.warning("job_skip_global_lock job=%s", job_name)
                return
            try:
                async with SessionLocal() as session:
                    run_id = await _db_job_run_start(job_name, triggered_by, meta, session)
                    _set_status(JOB_STATUS, job_name, status="running", started_at=utcnow(), finished_at=None, error=None)
                    t0 = time.perf_counter()
                    try:
                        result = await job_fn(session)
                        dur_ms = int((time.perf_counter() - t0) * 1000)
                        _set_status(JOB_STATUS, job_name, status="ok", finished_at=utcnow(), error=None)
                        await _db_job_run_finish(
                            run_id,
                            "ok",
                            None,
                            {"duration_ms": dur_ms, "result": result} if isinstance(result, dict) else {"duration_ms": dur_ms},
                            session,
                        )
                    except Exception:
                        logger.exception("job_failed job=%s", job_name)
                        tb = traceback.format_exc(limit=50)
                        dur_ms = int((time.perf_counter() - t0) * 1000)
                        _set_status(JOB_STATUS, job_name, status="failed", finished_at=utcnow(), error="exception")
                        await session.rollback()
                        await _db_job_run_finish(run_id, "failed", tb[-8000:], {"duration_ms": dur_ms}, session)
            finally:
                await _advisory_unlock(lock_conn, key)


@app.get("/health")
async def health():
    return {"ok": True}


@app.get("/api/v1/meta")
async def api_meta(_: None = Depends(_require_admin)):
    return {
        "app_env": settings.app_env,
        "started_at": APP_STARTED_AT.isoformat(),
        "tier_match_policy": settings.tier_match_policy,
        "scheduler_enabled": bool(settings.scheduler_enabled),
        "auth_configured": settings.auth_configured,
        "telegram_alerts": settings.telegram_admin_chat is not None,
    }


# --- admin: settlement -------------------------------------------------------


class FixtureEdit(BaseModel):
    id: str
    status: Optional[str] = None
    result: Optional[str] = None
    final_score: Optional[str] = None


class FixtureEdits(BaseModel):
    fixtures: list[FixtureEdit] = Field(default_factory=list)

    def as_updates(self) -> list[dict]:
        return [f.model_dump(exclude_unset=True) for f in self.fixtures]


@app.get("/api/v1/admin/settling/queue")
async def api_settling_queue(
    limit: int = Query(50, ge=1, le=200),
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return {"groups": await settling.settling_queue(session, limit)}


@app.post("/api/v1/admin/settling/{group_id}/open")
async def api_settling_open(
    group_id: uuid.UUID,
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await settling.open_group(session, str(group_id))


@app.post("/api/v1/admin/settling/{group_id}/preview")
async def api_settling_preview(
    group_id: uuid.UUID,
    payload: FixtureEdits | None = None,
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    updates = payload.as_updates() if payload else []
    rows = await settling.preview(session, str(group_id), updates)
    return {"group_id": str(group_id), "preview": [r.to_dict() for r in rows]}


@app.put("/api/v1/admin/settling/{group_id}/fixtures")
async def api_settling_save(
    group_id: uuid.UUID,
    payload: FixtureEdits,
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await settling.save_progress(session, str(group_id), payload.as_updates())


class GroupTiersRequest(BaseModel):
    tiers: Optional[dict] = None


@app.put("/api/v1/admin/settling/{group_id}/tiers")
async def api_settling_tiers(
    group_id: uuid.UUID,
    payload: GroupTiersRequest,
    _: None = Depends(_require_admin),
    actor: Optional[str] = Depends(_admin_actor),
    session: AsyncSession = Depends(get_session),
):
    out = await settling.set_group_tiers(session, str(group_id), payload.tiers)
    logger.info("settle_tiers_request group=%s actor=%s", group_id, actor)
    return out


@app.post("/api/v1/admin/settling/{group_id}/lock")
async def api_settling_lock(
    group_id: uuid.UUID,
    payload: FixtureEdits | None = None,
    _: None = Depends(_require_admin),
    actor: Optional[str] = Depends(_admin_actor),
    session: AsyncSession = Depends(get_session),
):
    updates = payload.as_updates() if payload else []
    outcome = await settling.lock_results(session, str(group_id), updates, settled_by=_actor_uuid(actor))
    logger.info("settle_lock_request group=%s actor=%s cascade=%s", group_id, actor, outcome.to_dict()["cascade"])
    return outcome.to_dict()


@app.post("/api/v1/admin/settling/{group_id}/repair")
async def api_settling_repair(
    group_id: uuid.UUID,
    _: None = Depends(_require_admin),
    actor: Optional[str] = Depends(_admin_actor),
    session: AsyncSession = Depends(get_session),
):
    outcome = await settling.repair_cascade(session, str(group_id))
    logger.info("settle_repair_request group=%s actor=%s cascade=%s", group_id, actor, outcome.to_dict()["cascade"])
    return outcome.to_dict()


@app.get("/api/v1/admin/settling/{group_id}/cascade")
async def api_settling_cascade(
    group_id: uuid.UUID,
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    row = await settling.cascade_status(session, str(group_id))
    if row is None:
        raise HTTPException(status_code=404, detail="No cascade recorded for this group")
    return row


# --- admin: ingestion, payout rules, cycles, users ---------------------------


class PayoutRuleRequest(BaseModel):
    site_id: str
    jackpot_type_id: str
    tiers: dict
    currency: Optional[str] = None


class CycleSettleRequest(BaseModel):
    winning_platform: Optional[str] = None


class CreditAdjustRequest(BaseModel):
    delta: int
    note: Optional[str] = None


@app.post("/api/v1/admin/groups")
async def api_ingest_group(
    payload: ingest.GroupIngest,
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await ingest.ingest_group(session, payload)


@app.put("/api/v1/admin/payout-rules")
async def api_payout_rule(
    payload: PayoutRuleRequest,
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await ingest.upsert_payout_rule(
        session,
        payload.site_id,
        payload.jackpot_type_id,
        payload.tiers,
        currency=payload.currency,
    )


@app.post("/api/v1/admin/cycles/{cycle_id}/settle")
async def api_cycle_settle(
    cycle_id: uuid.UUID,
    payload: CycleSettleRequest,
    _: None = Depends(_require_admin),
    actor: Optional[str] = Depends(_admin_actor),
    session: AsyncSession = Depends(get_session),
):
    summary = await cycles.settle_cycle(session, str(cycle_id), payload.winning_platform, actor=_actor_uuid(actor))
    return summary.to_dict()


@app.post("/api/v1/admin/users/{user_id}/credits")
async def api_adjust_credits(
    user_id: uuid.UUID,
    payload: CreditAdjustRequest,
    _: None = Depends(_require_admin),
    actor: Optional[str] = Depends(_admin_actor),
    session: AsyncSession = Depends(get_session),
):
    if payload.delta == 0:
        raise ValidationError("delta must be non-zero")
    if await get_balance(session, str(user_id)) is None:
        raise NotFoundError("user not found")
    balance = await adjust_credits(
        session,
        str(user_id),
        payload.delta,
        reason="manual_adjustment",
        ref_type="admin_users",
        ref_id=(payload.note or "").strip() or None,
        created_by=_actor_uuid(actor),
    )
    if balance is None:
        await session.rollback()
        raise ValidationError("adjustment would make the balance negative")
    await session.commit()
    logger.info("admin_credit_adjust user=%s delta=%s actor=%s", user_id, payload.delta, actor)
    return {"user_id": str(user_id), "credits": balance}


# --- user routes -------------------------------------------------------------


class EnterCycleRequest(BaseModel):
    mode: str
    site: Optional[str] = None


@app.get("/api/v1/me/credits")
async def api_my_credits(
    user: supabase_auth.AuthUser = Depends(_current_user),
    session: AsyncSession = Depends(get_session),
):
    balance = await get_balance(session, user.id)
    if balance is None:
        raise NotFoundError("profile not found")
    return {"user_id": user.id, "credits": balance}


@app.post("/api/v1/cycles/{cycle_id}/join")
async def api_join_cycle(
    cycle_id: uuid.UUID,
    user: supabase_auth.AuthUser = Depends(_current_user),
    session: AsyncSession = Depends(get_session),
):
    result = await cycles.join_cycle(session, str(cycle_id), user.id)
    return result.to_dict()


@app.post("/api/v1/cycles/{cycle_id}/enter")
async def api_enter_cycle(
    cycle_id: uuid.UUID,
    payload: EnterCycleRequest,
    user: supabase_auth.AuthUser = Depends(_current_user),
    session: AsyncSession = Depends(get_session),
):
    result = await cycles.enter_cycle(session, str(cycle_id), user.id, payload.mode, payload.site)
    return result.to_dict()


# --- jobs --------------------------------------------------------------------


@app.post("/api/v1/run-now")
async def api_run_now(
    request: Request,
    job: str = Query(..., description="repair_cascades | maintenance"),
    _: None = Depends(_require_admin),
    actor: Optional[str] = Depends(_admin_actor),
):
    """Trigger a single job on demand."""
    job_fn = JOBS.get(job)
    if job_fn is None:
        raise HTTPException(status_code=400, detail=f"job must be one of: {', '.join(sorted(JOBS))}")

    token_key = (settings.admin_token or "").strip()
    now_ts = time.time()
    last = RUN_NOW_LAST.get(token_key)
    min_interval = int(settings.run_now_min_interval_seconds or 0)
    if last is not None and min_interval > 0 and (now_ts - last) < float(min_interval):
        raise HTTPException(status_code=429, detail="Too Many Requests (min interval)")
    RUN_NOW_LAST[token_key] = now_ts

    actor = actor or "unknown"
    client_ip = request.client.host if request.client else None
    skipped = _get_lock(job).locked()
    if not skipped:
        _create_task(
            _run_job(job, job_fn, triggered_by=f"manual:{actor}", meta={"actor": actor, "client_ip": client_ip}),
            label=f"run-now:{job}",
        )
    logger.info("Triggered run-now for %s", job)
    return {"ok": True, "started": job, "skipped": skipped}


@app.get("/api/v1/jobs/status")
async def api_jobs_status(_: None = Depends(_require_admin)):
    return {"jobs": _serialize_status(JOB_STATUS)}


@app.get("/api/v1/jobs/runs")
async def api_job_runs(
    job_name: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: None = Depends(_require_admin),
    *,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    status_norm = None
    if status:
        status_norm = status.strip().lower()
        if status_norm not in {"running", "ok", "failed"}:
            raise HTTPException(status_code=400, detail="status must be one of: running, ok, failed")

    params = {"job": job_name, "status": status_norm}
    count_row = (
        await session.execute(
            text(
                """
                SELECT COUNT(*) AS cnt
                FROM job_runs
                WHERE (:job IS NULL OR job_name = :job)
                  AND (:status IS NULL OR lower(status) = :status)
                """
            ).bindparams(
                bindparam("job", type_=SAString),
                bindparam("status", type_=SAString),
            ),
            params,
        )
    ).first()
    response.headers["X-Total-Count"] = str(int(count_row.cnt or 0) if count_row else 0)

    res = await session.execute(
        text(
            """
            SELECT id, job_name, status, triggered_by, started_at, finished_at, error, meta
            FROM job_runs
            WHERE (:job IS NULL OR job_name = :job)
              AND (:status IS NULL OR lower(status) = :status)
            ORDER BY started_at DESC
            LIMIT :limit OFFSET :offset
            """
        ).bindparams(
            bindparam("job", type_=SAString),
            bindparam("status", type_=SAString),
            bindparam("limit", type_=Integer),
            bindparam("offset", type_=Integer),
        ),
        {**params, "limit": limit, "offset": offset},
    )
    out = []
    for row in res.fetchall():
        duration = None
        if row.started_at and row.finished_at:
            duration = (row.finished_at - row.started_at).total_seconds()
        out.append(
            {
                "id": int(row.id),
                "job_name": row.job_name,
                "status": row.status,
                "triggered_by": row.triggered_by,
                "started_at": row.started_at.isoformat() if row.started_at is not None else None,
                "finished_at": row.finished_at.isoformat() if row.finished_at is not None else None,
                "duration_seconds": duration,
                "error": row.error,
                "meta": row.meta,
            }
        )
    return out
